"""Shared test doubles and stream helpers."""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from referral_api.services.errors import CompletionError


class Script:
    """One scripted completion: chunks to yield, then an optional failure"""

    def __init__(self, chunks: List[str], error: Optional[Exception] = None, fail_on_open: bool = False):
        self.chunks = chunks
        self.error = error
        self.fail_on_open = fail_on_open


class FakeLLMService:
    """Stands in for LLMService; each stream() call consumes the next script."""

    def __init__(self):
        self.scripts: List[Script] = []
        self.prompts: List[str] = []
        self.options: List[Any] = []
        self.generate_result = "Add the client's age and household size."
        self.generate_error: Optional[Exception] = None
        self.closed = False

    def queue(self, *chunks: str, error: Optional[Exception] = None, fail_on_open: bool = False) -> None:
        self.scripts.append(Script(list(chunks), error=error, fail_on_open=fail_on_open))

    @asynccontextmanager
    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        self.options.append(options)
        script = self.scripts.pop(0) if self.scripts else Script([])
        if script.fail_on_open:
            raise CompletionError("Completion request failed", cause=ConnectionError("network down"))

        async def tokens():
            for chunk in script.chunks:
                await asyncio.sleep(0)
                yield chunk
            if script.error is not None:
                raise script.error

        yield tokens()

    async def generate(self, prompt, options):
        self.prompts.append(prompt)
        if self.generate_error is not None:
            raise self.generate_error
        return self.generate_result

    async def close(self):
        self.closed = True


def chunked(text: str, size: int) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def parse_ndjson(raw: str) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in raw.split("\n") if line.strip()]
