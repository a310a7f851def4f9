"""Prompt templates for the ten-step translation conversation.

Every template is a pure function of its arguments. System prompts are chosen
by StepKind: the translator persona drives steps 1-8, the reviewer persona
drives the isolated external review and the refinement that follows it.
"""

from enum import Enum


class StepKind(Enum):
    TRANSLATOR = "translator"
    REVIEWER = "reviewer"


def _pair(target_language: str, source_language: str | None) -> str:
    return f"{target_language} and {source_language}" if source_language else target_language


def translator_system(target_language: str, source_language: str | None, custom_instructions: str | None = None) -> str:
    prompt = f"""\
You are an expert literary translator with deep fluency in {_pair(target_language, source_language)}.
Your goal is to create a high-quality translation that preserves the original's tone, style, literary devices,
cultural nuances, and overall impact. You prioritize readability and naturalness in the target language while
staying faithful to the source text's meaning and intention{"" if source_language else " (infer the source language from the text provided)"}.

Always place your output inside the XML tags each request asks for, for example:
<analysis>, <expression_exploration>, <cultural_discussion>, <title_options>, <first_translation>,
<critique>, <improved_translation>, <second_critique>, <further_improved_translation>, <review>,
<final_translation>.

Your tone should be conversational and thoughtful, as if you're discussing the translation process with a colleague.
Think deeply about cultural context, idiomatic expressions, and literary devices that would resonate with native
{target_language} speakers. Work through the translation step by step, maintaining the voice and essence of the
original while making it feel naturally written in {target_language}."""
    if custom_instructions:
        prompt += f"\n\nAdditional instructions for this translation:\n{custom_instructions}"
    return prompt


def reviewer_system(target_language: str, source_language: str | None, custom_instructions: str | None = None) -> str:
    direction = f"from {source_language} to {target_language}" if source_language else f"to {target_language}"
    prompt = f"""\
You are an expert literary translator and critic with deep fluency in {_pair(target_language, source_language)}.
Your task is to critically review a translation {direction}, providing detailed, constructive feedback on how
well it captures the essence, tone, and cultural nuances of the original text, and to produce refined versions
when asked. Be candid but fair. Place your output inside the XML tags each request asks for."""
    if custom_instructions:
        prompt += f"\n\nThe translator was given these additional instructions:\n{custom_instructions}"
    return prompt


SYSTEM_PROMPTS = {
    StepKind.TRANSLATOR: translator_system,
    StepKind.REVIEWER: reviewer_system,
}


def system_prompt(kind: StepKind, target_language: str, source_language: str | None, custom_instructions: str | None = None) -> str:
    return SYSTEM_PROMPTS[kind](target_language, source_language, custom_instructions)


def initial_analysis(target_language: str, source_language: str | None, source_text: str) -> str:
    origin = f" from {source_language}" if source_language else ""
    return f"""\
I'd like your help translating a text into {target_language}{origin}.
Before we start, could you analyze what we'll need to preserve in terms of tone, style, meaning, and cultural nuances?

Here's the text:

{source_text}

What are the key elements that make this text distinctive? What tone, voice, argument structure, rhetorical
devices, and cultural references should we be careful to preserve in translation?

Remember to put your analysis in <analysis> tags."""


def expression_exploration(target_language: str, source_language: str | None) -> str:
    return f"""\
Now that we've analyzed the text, how could we express these elements in {target_language}?

How might we capture the tone and style of the original? Are there particular expressions, idioms, or literary
devices in {target_language} that could convey the same feeling and impact? How should we handle cultural
references or metaphors so they resonate with {target_language} speakers while staying true to the original?

Please include specific examples in <expression_exploration> tags."""


def cultural_discussion(target_language: str, source_language: str | None) -> str:
    return f"""\
Let's discuss our approach to tone and culture in {target_language}.

What level of formality or honorifics would feel most natural given the content and style of the original?
Are there cultural references or allegories in {target_language} that could convey the essence of certain
passages, even if they slightly modify the literal meaning? How do we keep a distinctive personal voice rather
than something generic?

Please share your thoughts in <cultural_discussion> tags."""


def title_exploration(target_language: str, source_language: str | None) -> str:
    origin = source_language or "the source language"
    return f"""\
A few more questions before we start translating into {target_language}:

How might we translate the title? Please suggest a few options that capture its essence and appeal.
Are there {target_language} writers or texts with a similar style that could inspire our approach?
What common pitfalls should we avoid when translating this kind of content from {origin} to {target_language}?

Please share your thoughts in <title_options> tags."""


def first_translation(target_language: str, source_language: str | None, source_text: str) -> str:
    return f"""\
I think we're ready to start translating! Based on our discussions so far, please create a first draft
translation of the text into {target_language}.

Here's the original text again for reference:

{source_text}

Apply everything we've discussed about tone, style, cultural adaptation, and voice. Translate the entire text.
Remember to put your translation in <first_translation> tags."""


def self_critique(target_language: str, previous_translation: str) -> str:
    return f"""\
Now that we have our first draft, please review it critically: sentence structure and flow, word choice,
cultural adaptation, preservation of tone and voice, literary devices, and overall naturalness in {target_language}.

Then provide a complete improved version that addresses the issues you identified.

Here is the translation to critique and improve:

{previous_translation}

Put your critique in <critique> tags and your complete improved translation in <improved_translation> tags."""


def further_refinement(target_language: str, previous_translation: str) -> str:
    return f"""\
With fresh eyes, please take another look at our current translation. Where could the {target_language} be more
natural, the cultural adaptation more nuanced, or the translation more faithful to the original's spirit?

After your critique, provide the complete refined translation.

Here is the translation to critique and improve:

{previous_translation}

Put your second critique in <second_critique> tags and your complete further improved translation
in <further_improved_translation> tags."""


def final_translation(target_language: str, source_language: str | None, previous_translation: str) -> str:
    origin = source_language or "original"
    return f"""\
As a final step, please provide:

1. A comprehensive review: compare the {origin} text with our {target_language} translation, assess the
   translation as a standalone piece of {target_language} writing, and reflect on how well we preserved the key
   elements identified at the beginning.
2. A final, polished version of the entire translation.

Here is the translation to review and finalize:

{previous_translation}

Put your review in <review> tags and your complete final translation in <final_translation> tags."""


def external_review(target_language: str, source_language: str | None, source_text: str, translation: str) -> str:
    origin = source_language or "original"
    return f"""\
<Original>
{source_text}
</Original>

<Translation>
{translation}
</Translation>

Here is an {origin} text and a {target_language} translation. Critique how well the translation captures the soul
of the original and how it stands alone as a piece of writing. Provide actionable feedback, with possible
inspiration from good {target_language} writers.

Please format your response in <external_review> tags."""


def apply_external_feedback(previous_translation: str, review: str) -> str:
    return f"""\
Here is an external review of the translation:

{review}

Based on this feedback, create the final, refined version of the translation. Provide the complete text.

Here's the current translation:

{previous_translation}

Put your refined translation in <refined_final_translation> tags."""


def continuation(anchor: str) -> str:
    return f"""\
Your response appeared to be cut off. Please continue your translation from where you left off, starting at this point:

"{anchor.strip()}"

Continue in the same style, tone, and approach. Don't repeat what you've already translated, and don't add
notes like "(to be continued)". If there is nothing left to translate, say so."""


VERIFIER_SYSTEM = """\
You are a translation verification assistant. You'll be given a source text and its translation. Decide whether
the translation is complete or was cut off. If incomplete, identify the last line of the translation and the
corresponding source line to continue from.

Respond ONLY with a JSON object:
{"continue": boolean, "targetLastLine": "string", "sourceLine": "string"}

- continue is true when the translation is incomplete.
- targetLastLine and sourceLine are required when continue is true.
- Ignore differences in formatting (newlines, spaces) when judging completeness."""


def verifier_user(source_text: str, translation: str) -> str:
    return f"""\
Check if this translation is complete:

<source_text>
{source_text}
</source_text>

<translation>
{translation}
</translation>"""
