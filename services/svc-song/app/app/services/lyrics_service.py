from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.domain.enums import VocalPreference
from app.domain.errors import IntegrationError, ProviderError
from app.domain.models import LyricsRequest, SongDetails

logger = logging.getLogger("lyrics")


class ChatCompletionError(ProviderError):
    pass


_STRUCTURE = """[intro]
2-3 lines
[verse]
8-10 short lines
[pre-chorus]
3-4 lines
[chorus]
6-8 lines
[verse]
8-10 lines
[pre-chorus]
3-4 lines
[chorus]
6-8 lines
[bridge]
6-8 lines
[chorus]
6-8 lines
[outro]
2-3 lines"""

_SYSTEM_DEFAULT = """You are a professional songwriter writing personal, heartfelt, singable lyrics.

CONTENT RULES:
- Lyrics must be clean, positive and appropriate.
- No violence, drugs, alcohol, sexual content, slang or profanity.
- No political, religious or controversial topics.
- Use themes like love, happiness, friendship, family and memories.

FORMAT RULES:
Tag every section: [intro], [verse], [pre-chorus], [chorus], [bridge], [outro].
Keep every line short and singable. The song must last at least two minutes.
Return only the lyrics."""

_SYSTEM_STRICT = """You are a professional songwriter writing personal, heartfelt, singable lyrics.

WARNING: a previous version of these lyrics was REJECTED by content moderation.

STRICT CONTENT RULES:
- Lyrics must be suitable for children: clean, positive, gentle.
- FORBIDDEN: violence, drugs, alcohol, smoking, sexual content, slang, profanity, insults.
- FORBIDDEN: political, religious or controversial topics.
- FORBIDDEN: death, separation, grief, regret.
- ONLY: love, happiness, friendship, family, childhood, memories, hope, dreams.
- Do not use any word that could possibly be flagged.

FORMAT RULES:
Tag every section: [intro], [verse], [pre-chorus], [chorus], [bridge], [outro].
Keep every line short and singable. The song must last at least two minutes.
Return only the lyrics."""

_SYSTEM_REVISE = """You are a professional lyrics editor. Apply the customer's feedback to the lyrics.

RULES:
1. Make the requested changes.
2. Keep the overall structure and the section tags ([intro], [verse], [chorus], ...).
3. Keep rhythm and rhyme.
4. Keep the lyrics clean and positive so they pass content moderation.
5. Return only the revised lyrics, no commentary."""


def _content(out: Dict[str, Any]) -> str:
    return ((((out.get("choices") or [{}])[0]).get("message") or {}).get("content") or "").strip()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First {...} block in a model reply, parsed. None when absent or malformed."""
    m = re.search(r"\{[\s\S]*\}", text or "")
    if not m:
        return None
    try:
        obj = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


class OpenAIChatClient:
    """Minimal chat-completions client (OpenAI-compatible endpoint)."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base = settings.OPENAI_BASE_URL.rstrip("/")
        self.model = settings.OPENAI_MODEL
        self.timeout = settings.OPENAI_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not settings.OPENAI_API_KEY:
            raise IntegrationError("OPENAI_API_KEY is not set.")
        return {"Authorization": f"Bearer {settings.OPENAI_API_KEY}", "Content-Type": "application/json"}

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, ChatCompletionError)),
    )
    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float | None = None,
        max_tokens: int = 2000,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": int(max_tokens),
        }
        # reasoning models reject an explicit temperature
        if temperature is not None and "gpt-5" not in self.model:
            payload["temperature"] = float(temperature)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(f"{self.base}/chat/completions", headers=self._headers(), json=payload)

        if r.status_code >= 400:
            raise ChatCompletionError(f"chat completion failed {r.status_code}: {r.text[:300]}")

        out = r.json()
        text = _content(out)
        if not text:
            raise ChatCompletionError("chat completion returned empty content")

        usage = out.get("usage") or {}
        logger.info(
            "chat_completion",
            extra={
                "model": out.get("model") or self.model,
                "prompt_tokens": usage.get("prompt_tokens"),
                "completion_tokens": usage.get("completion_tokens"),
            },
        )
        return text


def build_lyrics_prompt(req: LyricsRequest) -> str:
    parts: List[str] = ["Write song lyrics with the following properties:\n"]
    parts.append(f"Music genre: {req.song.type.value}")
    parts.append(f"Mood: {req.song.style.value}")
    if req.song.vocal != VocalPreference.any:
        parts.append(f"Vocal: {req.song.vocal.value} voice")
    if req.recipient_relation:
        parts.append(f"The song is for: {req.recipient_relation}")

    if req.include_name_in_song and req.recipient_name:
        parts.append(f"Name that must appear in the song: {req.recipient_name}")
        parts.append(f'\nIMPORTANT: use the name "{req.recipient_name}" naturally in the lyrics.')
    else:
        parts.append("\nIMPORTANT: do not use any personal names in the lyrics.")

    parts.append("\nStory to draw on:")
    parts.append(req.story)
    if req.notes:
        parts.append("\nAdditional notes:")
        parts.append(req.notes)

    parts.append("\nSong structure (at least two minutes):")
    parts.append(_STRUCTURE)
    parts.append(f"\nCreate a {req.song.style.value} atmosphere that fits {req.song.type.value}.")
    return "\n".join(parts)


class LyricsService:
    def __init__(self, chat: OpenAIChatClient):
        self.chat = chat

    async def generate(self, req: LyricsRequest, *, strict: bool = False) -> str:
        system = _SYSTEM_STRICT if strict else _SYSTEM_DEFAULT
        lyrics = await self.chat.complete(
            [{"role": "system", "content": system}, {"role": "user", "content": build_lyrics_prompt(req)}],
            temperature=0.8,
        )
        logger.info(
            "lyrics_generated",
            extra={
                "strict": strict,
                "chars": len(lyrics),
                "lines": lyrics.count("\n") + 1,
                "has_tags": bool(re.search(r"\[(verse|chorus|bridge)\]", lyrics)),
            },
        )
        return lyrics

    async def revise(self, lyrics: str, feedback: str) -> str:
        user = (
            "Revise these lyrics according to the customer's feedback.\n\n"
            f"CURRENT LYRICS:\n{lyrics}\n\n"
            f"CUSTOMER FEEDBACK:\n{feedback}\n\n"
            "Return only the new version:"
        )
        revised = await self.chat.complete(
            [{"role": "system", "content": _SYSTEM_REVISE}, {"role": "user", "content": user}],
            temperature=0.7,
        )
        logger.info("lyrics_revised", extra={"before_chars": len(lyrics), "after_chars": len(revised)})
        return revised

    async def synthesize_genre(self, song: SongDetails, notes: Optional[str] = None) -> str:
        """
        Rich style description for the music provider built from the chosen
        genre, mood and free-form notes. Never raises; falls back to "{type} {style}".
        """
        fallback = f"{song.type.value} {song.style.value}".lower()
        lines = [
            "You are a music genre expert. Turn the customer's choices into a short, rich style description "
            "for an AI music generator.",
            f"\nChosen genre: {song.type.value}",
            f"Chosen mood: {song.style.value}",
        ]
        if notes:
            lines.append(f"\nCustomer notes: {notes}")
        lines.append(
            "\nCRITICAL: the generator rejects artist names. If the notes mention an artist, "
            "describe the artist's musical traits instead "
            '(e.g. "emotional pop with classic arrangements", "conscious rap with heavy beats").'
        )
        lines.append("\nReturn only the description, 15-20 words, in English, with NO artist names.")

        try:
            genre = await self.chat.complete([{"role": "user", "content": "\n".join(lines)}], temperature=0.7, max_tokens=100)
        except Exception as e:
            logger.warning("genre_synthesis_failed", extra={"error": str(e)})
            return fallback

        genre = genre.strip().strip('"')
        if not genre:
            return fallback
        return await self.remove_artist_names(genre)

    async def remove_artist_names(self, style: str) -> str:
        """Second pass over a style description. Returns the input unchanged on any failure."""
        prompt = (
            "Check the following music style description for ARTIST NAMES.\n"
            "If there are any, remove them and describe their musical traits instead. "
            "If there are none, return the description unchanged.\n\n"
            f"DESCRIPTION:\n{style}\n\n"
            "Return only the cleaned description, at most 20 words, in English."
        )
        try:
            cleaned = await self.chat.complete([{"role": "user", "content": prompt}], temperature=0.5, max_tokens=80)
        except Exception as e:
            logger.warning("artist_name_removal_failed", extra={"error": str(e)})
            return style

        cleaned = cleaned.strip().strip('"')
        if not cleaned:
            return style
        if cleaned != style:
            logger.info("artist_names_removed", extra={"before": style, "after": cleaned})
        return cleaned
