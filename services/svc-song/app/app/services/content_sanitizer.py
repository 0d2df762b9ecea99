from __future__ import annotations

import logging
import re
from typing import List

from app.domain.models import LyricsRequest, ModerationAnalysis
from app.services.lyrics_service import LyricsService, OpenAIChatClient, extract_json_object

logger = logging.getLogger("content_sanitizer")

_QUOTED = re.compile(
    r"[\"“”«`]([^\"“”«»`]{1,80})[\"“”»`]"
    r"|(?<!\w)[‘']([^‘’']{1,80})[’'](?!\w)"
)
_LISTED = re.compile(
    r"(?:words?|terms?|phrases?|artists?(?:\s+names?)?|names?|contains?|including)\s*[:\-]\s*(.+)$",
    re.IGNORECASE,
)
_DANGLING_TAIL = re.compile(r"(?:\bin the style of|\binspired by|\blike|\bby|\bstyle)$", re.IGNORECASE)
_DANGLING_HEAD = re.compile(r"^(?:style\b|type\b)", re.IGNORECASE)
_SPLIT = re.compile(r"\s*(?:,|;|/|\band\b|\|)\s*", re.IGNORECASE)


def _dedupe(items: List[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for it in items:
        t = it.strip().strip(".!?()[]{}").strip()
        if not t or t.lower() in seen:
            continue
        seen.add(t.lower())
        out.append(t)
    return out


def parse_rejection(detail: str | None) -> List[str]:
    """
    Offending tokens named in a provider rejection message.

    Quoted substrings win; otherwise a "words: a, b" style list is split.
    Returns [] when nothing is isolatable.
    """
    text = (detail or "").strip()
    if not text:
        return []

    quoted = [a or b for a, b in _QUOTED.findall(text)]
    if quoted:
        return _dedupe(quoted)

    m = _LISTED.search(text)
    if m:
        return _dedupe(_SPLIT.split(m.group(1)))
    return []


def strip_style_tokens(style: str, tokens: List[str]) -> str:
    """Remove tokens from a comma separated style string. Pure string work, case-insensitive."""
    out = style or ""
    for tok in sorted((t for t in tokens if t and t.strip()), key=len, reverse=True):
        out = re.sub(rf"(?<!\w){re.escape(tok.strip())}(?!\w)(?:'s)?", "", out, flags=re.IGNORECASE)

    parts = []
    for p in out.split(","):
        p = re.sub(r"\s+", " ", p).strip(" -")
        # dangling connectors left where a name used to be
        p = _DANGLING_TAIL.sub("", p).strip(" -")
        p = _DANGLING_HEAD.sub("", p).strip(" -")
        if p:
            parts.append(p)
    return ", ".join(parts)


def style_contains_tokens(style: str, tokens: List[str]) -> bool:
    s = (style or "").lower()
    return any(t.strip() and t.strip().lower() in s for t in tokens)


class ContentSanitizer:
    """
    Stateless helper over the chat model used by the moderation correction loop.
    Transport/model failures propagate to the caller.
    """

    def __init__(self, chat: OpenAIChatClient, lyrics: LyricsService):
        self.chat = chat
        self.lyrics = lyrics

    async def analyze(self, lyrics: str) -> ModerationAnalysis:
        prompt = (
            "You are a content moderation expert. Find words or short phrases in these song lyrics that "
            "music platforms may treat as sensitive.\n\n"
            f"LYRICS:\n{lyrics}\n\n"
            "Categories: violence, weapons, fighting, war; alcohol, drinking; drugs, smoking; sexual content; "
            "slang, profanity; death, suicide, grief; political or religious references.\n\n"
            "Answer in JSON:\n"
            '{"flagged": true/false, "flagged_phrases": ["..."], "suggestions": "..."}'
        )
        reply = await self.chat.complete([{"role": "user", "content": prompt}], temperature=0.3, max_tokens=500)
        obj = extract_json_object(reply)
        if obj is None:
            logger.warning("moderation_analysis_unparseable", extra={"reply": reply[:200]})
            return ModerationAnalysis()

        phrases = obj.get("flagged_phrases") or obj.get("flaggedWords") or []
        phrases = _dedupe([str(p) for p in phrases if p]) if isinstance(phrases, list) else []
        flagged = bool(obj.get("flagged", obj.get("hasSensitiveWords", False))) and bool(phrases)
        return ModerationAnalysis(flagged=flagged, flagged_phrases=phrases, suggestions=str(obj.get("suggestions") or ""))

    async def clean(self, lyrics: str, flagged_phrases: List[str]) -> str:
        prompt = (
            "You are a professional lyrics editor. Replace the flagged words below with clean, positive "
            "alternatives.\n\n"
            f"LYRICS:\n{lyrics}\n\n"
            f"FLAGGED WORDS:\n{', '.join(flagged_phrases)}\n\n"
            "RULES:\n"
            "1. Change only what is needed; keep the meaning.\n"
            "2. Keep rhythm and rhyme.\n"
            "3. Keep every section tag ([intro], [verse], ...) exactly as it is.\n\n"
            "Return only the cleaned lyrics."
        )
        return await self.chat.complete([{"role": "user", "content": prompt}], temperature=0.7, max_tokens=2000)

    async def regenerate(self, req: LyricsRequest) -> str:
        return await self.lyrics.generate(req, strict=True)
