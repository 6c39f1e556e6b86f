"""Prompt templates for the four HR workflow steps and the chat assistant."""

from typing import Literal

StepType = Literal["job_intake", "sourcing", "screening", "interview"]
Language = Literal["zh-TW", "en", "ja"]

# Must be sent as part of the system prompt
FORBIDDEN_MARKERS_SYSTEM_PROMPT = """Important Instruction:
You must output PLAIN TEXT only.
Do NOT use any custom tagging, internal markers, or special formatting syntax.
Do NOT use any placeholders like START/END tags.
Do NOT use italics or slanted text (i.e. do not use *text* or _text_ for emphasis).
Use standard Markdown for bolding if needed (e.g. **bold**), but strictly avoid italics.
Never output internal placeholder text or debug markers."""

_PLAIN_TEXT_RULES = """Important:
1. Do not use any special markers or emphasis syntax (such as STRONGSTART).
2. Do not use italics (*text* or _text_); write plain text.
3. Use plain text and normal punctuation only."""

RETRY_HINT = (
    "\n\nPlease produce a version that differs from the previous one, "
    "presenting it from a different angle or with a different focus."
)

_LANGUAGE_INSTRUCTIONS: dict[str, str] = {
    "en": "Please output the entire response in English.",
    "ja": "回答全体を日本語で出力してください。",
    "zh-TW": "請以繁體中文（Traditional Chinese）輸出完整回應。",
}

_CHAT_LANGUAGE_INSTRUCTIONS: dict[str, str] = {
    "en": "Please output in English.",
    "ja": "日本語で出力してください。",
    "zh-TW": "請以繁體中文輸出。",
}


# =============================================================================
# Step templates
# =============================================================================

JOB_INTAKE_TEMPLATE = """You are a senior HR recruiting consultant. Based on the job description (JD) below, analyze it and produce a complete candidate persona.

Job description:
{input}

Return the following in clear, well-structured natural language:

[Job Title]
(The official title of the position)

[Department]

[Required Experience]
(For example: 1-3 years, 3-5 years)

[Required Skills]
(Every required skill, one per line)

[Personality Traits]
(What kind of personality this role needs)

[Education]
(If mentioned)

[Work Arrangement]
(Full-time / part-time / remote / hybrid)

[Salary Range]
(If mentioned)

[Candidate Persona]
(One complete paragraph describing the ideal candidate: skills, experience and traits)

[Key Requirements]
(The most critical requirements)

[Nice to Have]
(Items that are a plus but not required)

Write clearly and professionally so HR can use the content directly.

""" + _PLAIN_TEXT_RULES

SOURCING_TEMPLATE = """You are a senior HR recruiting consultant. Based on the job information below, produce recruiting copy and a sourcing strategy.

Job information:
{input}

Return the following in clear, well-structured natural language:

[Job Post]
(An engaging post ready for LinkedIn, Facebook or job boards)

[Search Keywords]
(5-10 of the most effective keywords for finding candidates)

[LinkedIn Invitation Template]
(A professional, friendly LinkedIn invitation ready to send)

[Email Invitation Template]
(A professional email invitation ready to send)

[Recommended Platforms]
(The best platforms for this role and why)

[Target Audience]
(Characteristics of the target candidates, to help HR search precisely)

Write clearly and professionally so HR can use the content directly.

""" + _PLAIN_TEXT_RULES

SCREENING_TEMPLATE = """You are a hiring manager and interviewer with 15 years of experience. Perform a strict and fair fit analysis of the job description (JD) and candidate resume below.

Input:
{input}

Note: the input usually contains both the job requirements and the candidate resume. Tell the two apart yourself.

Produce a decision-support report for the hiring manager with the following sections, as clear bullet points:

[Fit Overview]
A score from 0 to 100 and a one-sentence verdict on whether the candidate is worth interviewing.

[Core Strengths]
3-5 points where the candidate best matches the role.

[Risks and Concerns]
Doubts or risks in the resume (frequent job changes, missing key skills, employment gaps).

[Suggested Follow-up Questions]
3-5 concrete interview questions that address the risks above.

[Recommendation]
One of: strongly recommend interview / recommend interview / undecided / do not recommend, with a short reason.

Write clearly and professionally so HR can use the content to make a decision.

Important:
1. Never output code blocks or JSON.
2. Never use any special markers or emphasis syntax (such as STRONGSTART).
3. Do not use italics (*text* or _text_); write plain text.
4. Output a plain text report."""

INTERVIEW_TEMPLATE = """You are a senior HR recruiting consultant. Evaluate the interview based on the transcript below.

Interview transcript:
{input}

Return the following in clear, well-structured natural language:

[Interview Summary]
(A complete paragraph summarizing the discussion and the candidate's performance)

[Scores]
Communication: XX/100
(Brief reason)

Technical ability: XX/100
(Brief reason)

Culture fit: XX/100
(Brief reason)

Overall: XX/100
(Overall assessment)

[Highlights]
(One per line)

[Concerns to Confirm]
(One per line)

[Demonstrated Strengths]
(One per line)

[Questions to Clarify]
(Follow-up questions for the candidate, one per line)

[Recommendation]
(Whether to hire, with detailed reasoning)

[Next Steps]
(For example: schedule a second interview, run a background check, send an offer)

Write clearly and professionally so HR can use the content to make a decision.

""" + _PLAIN_TEXT_RULES

STEP_TEMPLATES: dict[str, str] = {
    "job_intake": JOB_INTAKE_TEMPLATE,
    "sourcing": SOURCING_TEMPLATE,
    "screening": SCREENING_TEMPLATE,
    "interview": INTERVIEW_TEMPLATE,
}


def get_prompt(
    step: str,
    input: str,
    is_retry: bool = False,
    language: str = "zh-TW",
    custom_instruction: str | None = None,
) -> str:
    """Build the prompt for one workflow step.

    The step template is followed by the retry hint (retry mode only), the
    user's custom instruction, and the output-language instruction.

    Raises:
        ValueError: If the step is unknown.
    """
    template = STEP_TEMPLATES.get(step)
    if template is None:
        raise ValueError(f"Unknown step type: {step}")

    prompt = template.replace("{input}", input)
    if is_retry:
        prompt += RETRY_HINT
    if custom_instruction:
        prompt += f"\n\n[Additional user instruction]:\n{custom_instruction}"
    prompt += "\n\n" + _LANGUAGE_INSTRUCTIONS.get(language, _LANGUAGE_INSTRUCTIONS["zh-TW"])
    return prompt


def get_chat_system_prompt(language: str = "zh-TW", custom_instruction: str | None = None) -> str:
    """System prompt for the HR chat assistant."""
    lang_instruction = _CHAT_LANGUAGE_INSTRUCTIONS.get(language, _CHAT_LANGUAGE_INSTRUCTIONS["zh-TW"])
    custom = f"\n\n[Additional user instruction]: {custom_instruction}" if custom_instruction else ""

    return f"""{FORBIDDEN_MARKERS_SYSTEM_PROMPT}

You are an AI assistant for HR staff and recruiting consultants. Your expertise includes:

1. Writing and refining job descriptions (JD)
2. Designing candidate personas
3. Planning recruiting strategy
4. Designing interview questions
5. Evaluating and screening resumes
6. Interview evaluation and decision support

Answer in a professional, friendly and practical way, with concrete, actionable advice. For recruiting questions, prefer structured answers.
{lang_instruction}{custom}"""


CHAT_SYSTEM_PROMPT = get_chat_system_prompt()
