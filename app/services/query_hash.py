"""
Cache key for research queries: sha256 over (query, system prompt, model), case-insensitive.
Each field is length-prefixed so a separator inside one field cannot shift into the next.
"""
import hashlib

DEFAULT_MODEL_KEY = "default"


def create_query_hash(query_text: str, system_prompt: str = "", model: str | None = DEFAULT_MODEL_KEY) -> str:
    parts = [(p or "").lower() for p in (query_text, system_prompt, model or DEFAULT_MODEL_KEY)]
    content = "|".join(f"{len(p)}:{p}" for p in parts)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
