from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    payment_pending = "payment_pending"
    paid = "paid"
    lyrics_generating = "lyrics_generating"
    music_generating = "music_generating"
    completed = "completed"
    failed = "failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.completed, OrderStatus.failed})

# to_status -> statuses it may be entered from
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.paid: frozenset({OrderStatus.payment_pending}),
    OrderStatus.lyrics_generating: frozenset({OrderStatus.paid}),
    OrderStatus.music_generating: frozenset({OrderStatus.lyrics_generating}),
    OrderStatus.completed: frozenset({OrderStatus.music_generating}),
    OrderStatus.failed: frozenset(
        {
            OrderStatus.payment_pending,
            OrderStatus.paid,
            OrderStatus.lyrics_generating,
            OrderStatus.music_generating,
        }
    ),
}


class SongJobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ProviderTaskStatus(str, Enum):
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    sensitive_content = "sensitive_content"


class SongType(str, Enum):
    pop = "pop"
    rap = "rap"
    jazz = "jazz"
    arabesque = "arabesque"
    classical = "classical"
    rock = "rock"
    metal = "metal"
    nostalgic = "nostalgic"


class SongMood(str, Enum):
    romantic = "romantic"
    emotional = "emotional"
    fun = "fun"
    calm = "calm"


class VocalPreference(str, Enum):
    female = "female"
    male = "male"
    any = "any"


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"
