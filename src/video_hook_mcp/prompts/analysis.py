"""Marketing hook extraction prompt.

HOOK_ANALYSIS_PROMPT is sent together with the video part by
GeminiAnalysisClient; the response is constrained to the HookAnalysis
JSON schema. FIELD_FOCUS lists the sections actually requested so the
model does not spend output on fields the caller filtered out.
Variables: {field_focus}.
"""

from __future__ import annotations

HOOK_ANALYSIS_PROMPT = """\
Analyze the provided video and extract marketing insights:

1. Visual Hook: Identify the most compelling visual element that grabs \
attention in the first 3 seconds. Focus on colors, movement, composition, and \
visual storytelling elements.

2. Text Hook: Extract or suggest the most engaging text/caption that would \
accompany this video. This should be a short, attention-grabbing phrase or \
question.

3. Voice Hook: Analyze the audio/speech and identify the most compelling \
verbal hook, tagline, or opening line that creates curiosity and engagement.

4. Video Script: Provide a COMPLETE and DETAILED transcript of ALL spoken \
content in the video. Include every word spoken, with precise timestamps in \
[MM:SS] format. Do not summarize or truncate. If no speech is detected, \
answer "No spoken content detected".

5. Pain Point: Identify what problem this video addresses and how it \
positions the solution. What frustration or desire does it tap into?

{field_focus}
Keep each field concise but informative (max 200 words per field, the \
transcript excepted)."""

FIELD_LABELS: dict[str, str] = {
    "visual_hook": "Visual Hook",
    "text_hook": "Text Hook",
    "voice_hook": "Voice Hook",
    "video_script": "Video Script",
    "pain_point": "Pain Point",
}


def build_prompt(fields: list[str]) -> str:
    """Render the prompt, naming the requested sections when not all are wanted."""
    if len(fields) == len(FIELD_LABELS):
        focus = ""
    else:
        labels = ", ".join(FIELD_LABELS[f] for f in fields)
        focus = f"Only the following sections are needed: {labels}. Leave the others empty.\n"
    return HOOK_ANALYSIS_PROMPT.format(field_focus=focus)
