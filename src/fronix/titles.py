from __future__ import annotations

import logging
import re
from typing import Any

from .credentials import NoCredentialsAvailable
from .router import UpstreamRouter
from .store import DEFAULT_CHAT_TITLE, ChatStore
from .upstream import ResilientRequester, UpstreamError

logger = logging.getLogger(__name__)

MAX_TITLE_WORDS = 3
MAX_TITLE_CHARS = 60
_TRIVIAL = re.compile(r"^\s*(hi|hello|yo)[\s!.?]*$", re.IGNORECASE)

TITLE_PROMPT = """You are a chat title generator. Create a short, factual title that captures the main topic of the conversation.

Rules:
- Summarize the conversation in 3 words or fewer.
- Only include the main topic.
- Ignore greetings, small talk, filler text and emotional tone.
- Do not include pronouns or vague phrases.
- Output only the title, nothing else.

---

{transcript}"""


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def title_source_messages(messages: list[dict[str, Any]], limit: int = 2) -> list[dict[str, str]]:
    selected: list[dict[str, str]] = []
    for message in messages:
        if message.get("role") not in ("user", "assistant"):
            continue
        text = _text(message.get("content")).strip()
        if not text or _TRIVIAL.match(text):
            continue
        selected.append({"role": message["role"], "content": text})
        if len(selected) >= limit:
            break
    return selected


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'*#").strip()
    if title.lower().startswith("title:"):
        title = title[len("title:"):].strip()
    words = title.split()
    return " ".join(words[:MAX_TITLE_WORDS])[:MAX_TITLE_CHARS]


async def generate_chat_title(
    requester: ResilientRequester,
    router: UpstreamRouter,
    store: ChatStore,
    chat_id: str,
    user_id: str,
    messages: list[dict[str, Any]],
) -> str | None:
    """Best effort: name a chat that still carries the default title."""
    title_cfg = router.cfg.title_generation
    if title_cfg is None:
        return None
    try:
        chat = await store.get_chat(chat_id, user_id)
        if chat is None or chat.title_generated or chat.title != DEFAULT_CHAT_TITLE:
            logger.debug("skipping title generation chat=%s", chat_id)
            return None
        source = title_source_messages(messages)
        if not source:
            return None
        transcript = "\n".join(f"{m['role']}: {m['content']}" for m in source)
        decision = router.candidate(title_cfg.provider, title_cfg.model, tier="title")
        pool = decision.credential_pool
        response = await requester.execute(
            decision.endpoint_url,
            {
                "model": decision.upstream_model_id,
                "messages": [{"role": "user", "content": TITLE_PROMPT.format(transcript=transcript)}],
                "stream": False,
            },
            {"headers": {"Content-Type": "application/json"}},
            None if pool.anonymous and not len(pool) else pool,
            stream=False,
        )
        payload = response.json()
        title = clean_title(_text(payload["choices"][0]["message"].get("content")))
        if not title:
            return None
        await store.update_chat(chat_id, title=title, title_generated=True)
        logger.info("generated title chat=%s title=%s", chat_id, title)
        return title
    except (
        UpstreamError,
        NoCredentialsAvailable,
        ValueError,
        KeyError,
        IndexError,
        TypeError,
        AttributeError,
    ) as exc:
        logger.error("title generation failed chat=%s error=%r", chat_id, exc)
        return None
