"""Development helpers for populating a namespace with fake events."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker

from .crud import create_banner, create_event, toggle_rsvp
from .documents import DocumentStore
from .identity import ANONYMOUS_PREFIX
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Mixer",
    "Workshop",
    "Field Trip",
    "Potluck",
    "Book Club",
    "Game Night",
    "Open Studio",
]


def seed_fake_data(
    store: DocumentStore,
    *,
    event_count: int = 6,
    banner_count: int = 3,
    max_rsvps_per_event: int = 4,
    seed: int | None = None,
) -> dict[str, int]:
    """Create events spread over the next two weeks plus a few banners."""
    init_db()
    fake = Faker()
    rng = random.Random(seed)
    if seed is not None:
        Faker.seed(seed)

    stats = {"events": 0, "banners": 0, "rsvps": 0}
    now = utcnow().replace(second=0, microsecond=0)
    for _ in range(event_count):
        starts_at = now + timedelta(hours=rng.randint(2, 14 * 24))
        event = create_event(
            store,
            title=f"{fake.city()} {rng.choice(_event_types)}",
            description=fake.sentence(nb_words=12),
            start_time=starts_at.isoformat(timespec="minutes"),
            created_by=f"{ANONYMOUS_PREFIX}seed{fake.pystr(min_chars=16, max_chars=16)}",
        )
        stats["events"] += 1
        for _ in range(rng.randint(0, max_rsvps_per_event)):
            toggle_rsvp(
                store,
                event_id=event.id,
                user_id=f"{ANONYMOUS_PREFIX}{fake.pystr(min_chars=20, max_chars=20)}",
                currently_attending=False,
            )
            stats["rsvps"] += 1

    for index in range(banner_count):
        create_banner(store, image_url=f"https://picsum.photos/seed/eventboard{index}/1200/400")
        stats["banners"] += 1
    return stats
