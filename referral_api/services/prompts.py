"""
Prompt assembly for the completion service.

Every function here is pure: the same inputs always produce the same prompt
text (no timestamps, no randomness) so prompts can be asserted on in tests.
"""
from typing import Any, List, Optional, Sequence

from referral_api.models.referral import ChatMessage, HistoryTurn, ReferralFilters, ResourceRecord
from referral_api.services.errors import ValidationError

DEFAULT_ORGANIZATION = "Goodwill Central Texas"

RESOURCE_CATEGORIES = [
    "Goodwill Resources & Programs",
    "Local Community Resources",
    "Government Benefits",
    "Job Postings",
    "GCTA Trainings",
    "CAT Trainings",
]

PROVIDER_TYPES = ["Goodwill Provided", "Community Resource", "Government Benefit"]

RESOURCE_FIELDS_EXAMPLE = """    {
      "number": 1,
      "title": "Organization Name - Program Name",
      "service": "Service type",
      "category": "Exact category name from the list above",
      "providerType": "Goodwill Provided | Community Resource | Government Benefit",
      "whyItFits": "Why this resource matches the client's needs",
      "eligibility": "16+ years, Austin/Travis County resident, 200% or less Federal Poverty Guidelines",
      "services": "Career case management, occupational training, job placement assistance",
      "support": "Transportation assistance, professional clothing, educational incentives",
      "contact": "Phone: [number] | [address]",
      "source": "Source reference with specific detailed URL",
      "badge": "specific-program-page.com (not homepage)",
      "classDate": "Next class start date, only for trainings"
    }"""

MARKDOWN_GUIDANCE = """Use markdown formatting for better readability:
- Use **bold** for emphasis
- Use bullet points with * for lists
- Use ## for section headers
- Use ### for subsection headers"""


def _join(values: Sequence[str]) -> str:
    return ", ".join(v.strip() for v in values if v and v.strip())


def build_filter_prompt(filters: Optional[ReferralFilters]) -> str:
    """
    Render the non-category filters as plain sentences
    """
    if filters is None:
        return ""

    parts = []
    labelled = [
        ("Focus on these resource types", filters.resource_types),
        ("Location preferences", filters.locations),
        ("Age groups", filters.age_groups),
        ("Income ranges", filters.income_ranges),
        ("Languages", filters.languages),
        ("Accessibility needs", filters.accessibility_needs),
    ]
    for label, values in labelled:
        text = _join(values)
        if text:
            parts.append(f"{label}: {text}.")

    return " ".join(parts)


def build_known_constraints(filters: Optional[ReferralFilters]) -> str:
    """
    State category, sub-category and location selections as settled facts.

    The case manager already picked these in the UI, so the model must not
    ask for them again or wander outside them.
    """
    if filters is None:
        return ""

    lines = []
    categories = _join(filters.categories)
    sub_categories = _join(filters.sub_categories)
    location = (filters.location or "").strip()

    if categories or sub_categories:
        lines.append("KNOWN CONSTRAINTS (already selected by the case manager, do not ask about them again):")
        if categories:
            lines.append(f"- Categories: {categories}")
        if sub_categories:
            lines.append(f"- Sub-categories: {sub_categories}")
        lines.append(
            "- STRICT FILTER MODE: only return resources that belong to the selected "
            "categories and sub-categories. Do not substitute resources from any other category, "
            "even if fewer resources are available."
        )
    if location:
        if not lines:
            lines.append("KNOWN CONSTRAINTS (already selected by the case manager, do not ask about them again):")
        lines.append(f"- Location: {location}. Prefer resources that serve this area.")

    return "\n".join(lines)


def render_history(history: Sequence[HistoryTurn]) -> str:
    """Numbered Q/A transcript of earlier turns"""
    lines = ["Previous conversation context:"]
    for index, entry in enumerate(history, start=1):
        answer = entry.response.question
        if entry.response.summary:
            answer = f"{answer} - {entry.response.summary}" if answer else entry.response.summary
        lines.append(f"Q{index}: {entry.prompt}")
        lines.append(f"A{index}: {answer}")
    return "\n".join(lines)


def assemble(
    user_text: Any,
    filters: Optional[ReferralFilters] = None,
    history: Optional[Sequence[HistoryTurn]] = None,
    output_language: Optional[str] = None,
    is_follow_up: bool = False,
    organization: str = DEFAULT_ORGANIZATION,
) -> str:
    """
    Build the referral (or follow-up) instruction string.

    Raises ValidationError when user_text is empty or not a string, or when
    a first turn has no usable prompt text after filters are applied.
    """
    if not isinstance(user_text, str) or not user_text:
        raise ValidationError("Prompt is required")

    language = (output_language or "English").strip() or "English"

    if is_follow_up:
        return _assemble_follow_up(user_text.strip(), history or [], language, organization)

    client_text = f"{build_filter_prompt(filters)} {user_text.strip()}".strip()
    if not client_text:
        raise ValidationError("Please provide more details to generate referrals.")

    return _assemble_referrals(client_text, build_known_constraints(filters), language, organization)


def _assemble_follow_up(question: str, history: Sequence[HistoryTurn], language: str, organization: str) -> str:
    if not question:
        raise ValidationError("Prompt is required")

    transcript = ""
    if history:
        transcript = f"\n\n{render_history(history)}\n\nCurrent follow-up question: "
    else:
        transcript = "\n\nFollow-up question: "

    return f"""You are a social services case manager AI assistant for {organization}. This is a follow-up question based on previous conversation.{transcript}{question}

Provide a helpful, conversational response that directly answers the follow-up question. You can respond in any format that's most appropriate - it could be a simple explanation, additional resources, clarification, or guidance. Be natural and helpful. Use web search to confirm current details such as phone numbers, schedules and application steps.

{MARKDOWN_GUIDANCE}

Generate all content in {language}.

Format the response as JSON with this structure:
{{
  "question": "Restate the follow-up question clearly",
  "summary": "Brief summary of your response",
  "content": "Your full response content with markdown formatting"
}}

IMPORTANT: Return ONLY the JSON object, no markdown formatting or code blocks."""


def _assemble_referrals(client_text: str, constraints: str, language: str, organization: str) -> str:
    categories = "\n".join(f"- {name}" for name in RESOURCE_CATEGORIES)
    providers = " | ".join(PROVIDER_TYPES)
    constraint_block = f"\n{constraints}\n" if constraints else ""

    return f"""You are a helpful assistant that generates personalized resource referrals for clients of {organization} seeking assistance. Based on the client description provided, use web search to find current, specific resources and generate up to 6 relevant resources from these categories:
{categories}
{constraint_block}
For each resource include: a title (organization and program name), why it fits the client, eligibility requirements, services offered, wraparound support, complete contact information and a specific source URL for the exact program page (not a homepage).

CRITICAL FORMATTING RULES:
- Do not include labels such as "Eligibility:" or emoji icons in field values; the UI adds them
- "providerType" must be one of: {providers}
- "category" must be one of the exact category names listed above
- Number resources sequentially starting at 1; every resource must have a unique "number"
- Emit "question" and "summary" before the "resources" array

For suggested follow-ups, create questions that ask HOW TO USE or ACCESS the specific resources you provided, for example "Explain the application process for food assistance".

Format the response as JSON with this structure:
{{
  "question": "What resources can help...",
  "summary": "Brief summary of what was found",
  "resources": [
{RESOURCE_FIELDS_EXAMPLE}
  ],
  "suggestedFollowUps": [
    "How-to question about accessing the first resource",
    "Process question about applying for the second resource",
    "Eligibility or requirement question about the third resource"
  ]
}}

IMPORTANT:
- Generate all content in {language}. All resource titles, descriptions, contact information, and explanations should be in {language}.
- Return ONLY the JSON object, no markdown formatting or code blocks.

Client description: {client_text}"""


def describe_resource(resource: ResourceRecord) -> str:
    """One-line label used in action plan prompts"""
    label = resource.title
    if resource.service:
        label = f"{label} - {resource.service}"
    if resource.provider_type:
        label = f"{label} ({resource.provider_type})"
    return label


def assemble_action_plan_summary(resources: Sequence[ResourceRecord], output_language: Optional[str] = None) -> str:
    """Overview covering every selected resource"""
    if not resources:
        raise ValidationError("Selected resources are required")
    language = output_language or "English"
    resource_list = "\n".join(f"{i}. {describe_resource(r)}" for i, r in enumerate(resources, start=1))

    return f"""Write the overview section of an action plan for a case manager whose client will access the following resources:

{resource_list}

Cover, in markdown:
## Action Plan Summary
- Priority order for approaching the resources
- Common preparation steps that apply to multiple resources
- Overall timeline and coordination strategy
- Key documents or information needed across resources

Keep it under 300 words. Generate all content in {language}. Return markdown only, no JSON and no code fences."""


def _resource_guide_body(resource: ResourceRecord) -> str:
    details = [f"Resource: {describe_resource(resource)}"]
    for label, value in [
        ("Eligibility", resource.eligibility),
        ("Services", resource.services),
        ("Contact", resource.contact),
        ("Source", resource.source),
    ]:
        if value:
            details.append(f"{label}: {value}")
    return "\n".join(details)


def assemble_resource_guide(resource: ResourceRecord, output_language: Optional[str] = None) -> str:
    """Step-by-step access guide for a single resource"""
    language = output_language or "English"
    return f"""Write a practical guide for a case manager helping a client access this resource. Use web search to confirm current details.

{_resource_guide_body(resource)}

Structure the guide in markdown:
### {resource.title}
1. **Step-by-step application/enrollment process**
2. **Required documents or information needed**
3. **Timeline expectations (how long it takes)**
4. **Tips for success or common pitfalls to avoid**
5. **Next steps after initial contact**

Generate all content in {language}. Return markdown only, no JSON and no code fences."""


def assemble_chat(message: Any, history: Optional[Sequence[ChatMessage]] = None, organization: str = DEFAULT_ORGANIZATION) -> str:
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")

    conversation = ""
    if history:
        turns: List[str] = []
        for msg in history:
            speaker = "User" if msg.role == "user" else "Assistant"
            turns.append(f"{speaker}: {msg.content}")
        conversation = "Previous conversation:\n" + "\n\n".join(turns) + "\n\n"

    return f"""You are a helpful assistant for {organization}, specializing in information about their programs, services, training opportunities, and community resources.

Your role is to:
1. Answer questions about {organization} programs, training courses, and services
2. Provide information about local community resources, government benefits, and support services
3. Help case managers and staff understand available options for their clients
4. Use web search to find the most current and accurate information
5. Include links, phone numbers, and specific contact details when available

If you don't know something, say so and suggest where to find the information.

{conversation}Current question: {message.strip()}

Respond in markdown with inline citations like [1], [2] and a short "Sources" list at the end."""


SUGGESTION_SYSTEM_PROMPT = """You are a helpful assistant that analyzes search prompts for a social services resource referral tool and suggests specific improvements.

Read the user's current search prompt and provide 2-4 specific, actionable suggestions to make it more detailed and effective.

Focus on identifying what's MISSING from their prompt. Suggest adding:
- Age or life stage details
- Family situation (single, family with kids, etc.)
- Income level or financial situation
- Urgency or timeline
- Specific barriers or challenges (transportation, disability, language, etc.)
- Geographic details (neighborhood, zip code)
- Current situation context (homeless, at risk of eviction, unemployed, etc.)

Format your response as a simple list with 2-4 suggestions, one clear sentence each, each starting with a bullet point (•)."""


def assemble_suggestions(prompt: Any) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Prompt is required")
    return f"""{SUGGESTION_SYSTEM_PROMPT}

Current search prompt: "{prompt.strip()}"

What specific details should be added to this prompt to get better, more relevant results?"""
