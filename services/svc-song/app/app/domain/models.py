from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .enums import (
    DiscountType,
    OrderStatus,
    SongJobStatus,
    SongMood,
    SongType,
    VocalPreference,
)

# -----------------------------
# Orders
# -----------------------------


class SongDetails(BaseModel):
    type: SongType
    style: SongMood
    vocal: VocalPreference = VocalPreference.any


class OrderRequest(BaseModel):
    """
    Structured order produced by the dialogue collaborator once every slot is filled.
    One entry in `songs` per song to produce.
    """
    customer_ref: str = Field(..., min_length=3, max_length=64)
    songs: List[SongDetails] = Field(..., min_length=1, max_length=2)

    recipient_relation: Optional[str] = Field(default=None, max_length=100)
    include_name_in_song: bool = False
    recipient_name: Optional[str] = Field(default=None, max_length=100)

    story: str = Field(..., min_length=1, max_length=900)
    notes: Optional[str] = Field(default=None, max_length=300)

    discount_code: Optional[str] = Field(default=None, max_length=40)

    @field_validator("discount_code")
    @classmethod
    def _normalize_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        s = v.strip().upper()
        return s or None


class Order(BaseModel):
    id: str
    customer_ref: str
    order_data: OrderRequest
    status: OrderStatus

    base_price: float
    discount_amount: float = 0
    total_price: float
    discount_code: Optional[str] = None

    lyrics: Dict[str, str] = Field(default_factory=dict)
    # synthesized style description per song, artist names removed
    genres: Dict[str, str] = Field(default_factory=dict)
    lyrics_revisions: int = 0
    audio_urls: Dict[str, str] = Field(default_factory=dict)

    payment_token: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def song_count(self) -> int:
        return len(self.order_data.songs)

    def lyrics_for(self, song_index: int) -> Optional[str]:
        return self.lyrics.get(str(song_index))

    def genre_for(self, song_index: int) -> Optional[str]:
        return self.genres.get(str(song_index))

    def audio_url_for(self, song_index: int) -> Optional[str]:
        return self.audio_urls.get(str(song_index))

    def all_songs_delivered(self) -> bool:
        return all(self.audio_url_for(i) for i in range(1, self.song_count + 1))


class CreateOrderResult(BaseModel):
    order_id: str
    payment_url: Optional[str] = None
    price: float
    status: OrderStatus
    discount_message: Optional[str] = None


class OrderProgressOut(BaseModel):
    order_id: str
    status: OrderStatus
    lyrics_ready: bool
    songs_ready: Dict[str, bool]
    completion_percentage: int
    error_message: Optional[str] = None


class LyricsRevisionIn(BaseModel):
    feedback: str = Field(..., min_length=1, max_length=1000)
    song_index: int = Field(default=1, ge=1)


class PaymentCallbackIn(BaseModel):
    order_id: str
    success: bool
    signature_valid: bool


# -----------------------------
# Song jobs
# -----------------------------


class SongJobPayload(BaseModel):
    lyrics: str
    song_type: SongType
    style: str
    vocal: VocalPreference = VocalPreference.any
    # synthesized style description (genre); cleared when the provider rejects a style token
    genre: Optional[str] = None

    # original narrative, kept so lyrics can be regenerated under stricter constraints
    story: str = ""
    notes: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_relation: Optional[str] = None
    include_name_in_song: bool = False


class SongJob(BaseModel):
    id: str
    order_id: str
    song_index: int
    customer_ref: str
    payload: SongJobPayload
    status: SongJobStatus = SongJobStatus.pending
    attempts: int = 0
    content_moderation_retries: int = 0
    last_error: Optional[str] = None
    provider_task_id: Optional[str] = None

    created_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    delete_after: Optional[datetime] = None

    @staticmethod
    def make_id(order_id: str, song_index: int) -> str:
        return f"{order_id}-song{int(song_index)}"


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


# -----------------------------
# Lyrics / moderation
# -----------------------------


class LyricsRequest(BaseModel):
    song: SongDetails
    story: str
    notes: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_relation: Optional[str] = None
    include_name_in_song: bool = False

    @classmethod
    def from_payload(cls, payload: SongJobPayload) -> "LyricsRequest":
        mood = payload.style if payload.style in SongMood._value2member_map_ else SongMood.emotional.value
        return cls(
            song=SongDetails(type=payload.song_type, style=SongMood(mood), vocal=payload.vocal),
            story=payload.story,
            notes=payload.notes,
            recipient_name=payload.recipient_name,
            recipient_relation=payload.recipient_relation,
            include_name_in_song=payload.include_name_in_song,
        )


class ModerationAnalysis(BaseModel):
    flagged: bool = False
    flagged_phrases: List[str] = Field(default_factory=list)
    suggestions: str = ""


# -----------------------------
# Discounts
# -----------------------------


class DiscountCode(BaseModel):
    id: str
    code: str
    type: DiscountType
    value: float

    max_uses: Optional[int] = None
    used_count: int = 0
    min_order_amount: Optional[float] = None

    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    allowed_customers: Optional[List[str]] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class DiscountUsage(BaseModel):
    id: str
    discount_code_id: str
    order_id: str
    customer_ref: str
    discount_amount: float
    original_price: float
    final_price: float
    used_at: Optional[datetime] = None


class DiscountResult(BaseModel):
    is_valid: bool
    discount_amount: float = 0
    final_price: float
    message: str
    discount_code: Optional[DiscountCode] = None


# -----------------------------
# Payment
# -----------------------------


class PaymentToken(BaseModel):
    token: str
    payment_url: str
    raw: Dict[str, Any] = Field(default_factory=dict)
