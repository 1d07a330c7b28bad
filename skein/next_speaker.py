"""Decide whether the model meant to keep talking after a tool-free reply."""

import logging

logger = logging.getLogger(__name__)

CHECK_PROMPT = """Analyze *only* the content and structure of your immediately preceding response (your last turn in the conversation history). Based *strictly* on that response, determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next action *you* intend to take (e.g., "Next, I will...", "Now I'll process...", "Moving on to analyze...") OR if the response seems clearly incomplete (cut off mid-thought without a natural conclusion), then the **'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question specifically addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement, or task *and* does not meet the criteria for Rule 1 or Rule 2, it implies a pause expecting user input or reaction. In this case, the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON format with exactly these two keys:
{"reasoning": "<brief explanation of the decision>", "next_speaker": "user" | "model"}"""

SPEAKERS = ("user", "model")


async def check_next_speaker(history: list, client, token=None) -> dict | None:
    """Return {"reasoning", "next_speaker"} or None when undetermined.

    None covers an empty history, a user message as the last entry, a failed
    model call, and a reply without a valid next_speaker.
    """
    if not history:
        return None

    last = history[-1]
    role = last.get("role")
    if role == "tool":
        return {
            "reasoning": "The last message is a tool result, so the model should respond to it.",
            "next_speaker": "model",
        }
    if role != "assistant":
        return None
    if not (last.get("content") or "").strip() and not last.get("tool_calls"):
        return {
            "reasoning": "The last message was empty, so the model should speak next.",
            "next_speaker": "model",
        }

    request = list(history) + [{"role": "user", "content": CHECK_PROMPT}]
    try:
        data = await client.generate_json(request, token)
    except Exception as e:
        logger.debug("next speaker check failed: %s", e)
        return None

    speaker = data.get("next_speaker")
    if not isinstance(speaker, str) or speaker not in SPEAKERS:
        return None
    return {"reasoning": str(data.get("reasoning", "")), "next_speaker": speaker}
