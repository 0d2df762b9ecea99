from __future__ import annotations

from typing import Optional

from app.domain.enums import SongMood, SongType, VocalPreference
from app.domain.models import SongJobPayload

# Suno rejects artist names in style text; these descriptions never carry one.
_TYPE_DESCRIPTIONS = {
    SongType.pop: "Modern pop with catchy melodies",
    SongType.rap: "Hip-hop with rhythmic flow",
    SongType.jazz: "Smooth jazz with soulful melodies",
    SongType.arabesque: "Turkish traditional music with emotional vocals",
    SongType.classical: "Classical orchestral",
    SongType.rock: "Rock with electric guitars",
    SongType.metal: "Heavy metal with powerful riffs",
    SongType.nostalgic: "Nostalgic retro vibes",
}

_MOOD_DESCRIPTIONS = {
    SongMood.romantic: "romantic, emotional, heartfelt",
    SongMood.emotional: "emotional, touching, sentimental",
    SongMood.fun: "fun, upbeat, energetic, cheerful",
    SongMood.calm: "calm, peaceful, relaxing, gentle",
}

_GENRE_VOCAL_TRAITS = {
    SongType.pop: "energetic",
    SongType.rap: "rhythmic",
    SongType.jazz: "smooth",
    SongType.arabesque: "passionate",
    SongType.classical: "elegant",
    SongType.rock: "edgy",
    SongType.metal: "intense",
    SongType.nostalgic: "vintage",
}

_TITLES = {
    SongType.pop: "Pop Song",
    SongType.rap: "Rap Song",
    SongType.jazz: "Jazz Melody",
    SongType.arabesque: "Arabesque Ballad",
    SongType.classical: "Classical Piece",
    SongType.rock: "Rock Anthem",
    SongType.metal: "Metal Track",
    SongType.nostalgic: "Nostalgic Song",
}


def build_style(payload: SongJobPayload) -> str:
    """
    Style text sent with the lyrics:
      genre (or a plain description of the song type), mood, vocal character.
    Mood values outside the known set pass through verbatim.
    """
    parts = [payload.genre or _TYPE_DESCRIPTIONS.get(payload.song_type, payload.song_type.value)]

    mood = _MOOD_DESCRIPTIONS.get(SongMood(payload.style)) if payload.style in SongMood._value2member_map_ else None
    if mood:
        parts.append(mood)
    elif payload.style.strip():
        parts.append(payload.style.strip())

    if payload.vocal != VocalPreference.any:
        trait = _GENRE_VOCAL_TRAITS.get(payload.song_type)
        voice = f"warm {payload.vocal.value} vocals"
        parts.append(f"{voice}, {trait}" if trait else voice)

    return ", ".join(p for p in parts if p)


def vocal_gender(vocal: VocalPreference) -> Optional[str]:
    if vocal == VocalPreference.female:
        return "f"
    if vocal == VocalPreference.male:
        return "m"
    # let the provider decide
    return None


def title_for(song_type: SongType) -> str:
    return _TITLES.get(song_type, "Song")
