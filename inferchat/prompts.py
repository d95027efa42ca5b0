LOCAL_SYSTEM_PROMPT = (
    "You are a helpful AI assistant running on the user's own machine. "
    "Answer clearly and concisely. If you are unsure, say so rather than guessing."
)

FALLBACK_NOTE = "*Note: Responded using local inference due to remote API unavailability.*"


def build_messages(query: str, history=None, system_prompt: str = LOCAL_SYSTEM_PROMPT):
    messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
    for item in history or []:
        role = item.get("role") if isinstance(item, dict) else getattr(item, "role", None)
        content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
        if role not in ("user", "assistant") or not content:
            continue
        messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": query})
    return messages


def annotate_fallback(response: str) -> str:
    return f"{response}\n\n{FALLBACK_NOTE}"
