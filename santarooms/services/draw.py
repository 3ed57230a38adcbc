"""
Draw scheduler - discovers rooms past their deadline and runs their draw.

A room moves PENDING (deadline ahead) -> ELIGIBLE (deadline passed, not drawn)
-> DRAWN (flag set, terminal). Only ELIGIBLE rooms are touched by a tick.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from ..models import utcnow
from ..security import DecryptError, decrypt_email
from .assignments import ValidationError, assign

logger = logging.getLogger(__name__)

TICK_JOB_ID = "santarooms-draw-tick"


@dataclass(frozen=True)
class Entrant:
    """A participant with their address decrypted, alive for one draw only."""
    id: int
    name: str
    email: str


@dataclass
class DrawResult:
    room_id: str
    assignments: int
    sent: int
    failed: int
    excluded: int
    completed: bool
    double_draw: bool = False


class DrawScheduler:
    """Runs draw ticks on a timer; at most one tick executes at a time."""

    def __init__(
        self,
        store,
        notifier,
        key: bytes,
        interval_seconds: int = 3600,
        rng: random.Random | None = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self._key = key
        self.interval_seconds = interval_seconds
        self.rng = rng
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None

    # ---- Lifecycle ----

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval_seconds,
            id=TICK_JOB_ID,
            max_instances=1,
            next_run_time=datetime.now(timezone.utc),
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Draw scheduler started (every %ss)", self.interval_seconds)

    def stop(self, wait: bool = True) -> None:
        """Stop the timer; with wait=True an in-flight tick finishes first."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Draw scheduler stopped")

    # ---- Ticks ----

    def tick(self) -> list[DrawResult]:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Draw tick skipped: previous tick still running")
            return []
        try:
            return self._run_tick()
        finally:
            self._tick_lock.release()

    def _run_tick(self) -> list[DrawResult]:
        try:
            rooms = self.store.list_rooms()
        except Exception:
            logger.exception("Draw tick aborted: could not list rooms")
            return []

        now = self.clock()
        results = []
        for room in rooms:
            if room.draw_completed or now < room.deadline:
                continue
            try:
                result = self.draw_room(room)
            except Exception:
                logger.exception("Unexpected error drawing room %s", room.id)
                continue
            if result is not None:
                results.append(result)
        return results

    def draw_room(self, room) -> DrawResult | None:
        """
        Run one room's draw. Returns None when the room stays eligible
        (claimed elsewhere, participants unavailable or too few of them).
        """
        try:
            claimed = self.store.claim_draw(room.id)
        except Exception:
            logger.exception("Could not claim room %s; will retry next tick", room.id)
            return None
        if not claimed:
            logger.info("Room %s is drawn or being drawn by another worker; skipping", room.id)
            return None

        try:
            participants = self.store.list_participants(room.id)
        except Exception:
            logger.exception("Could not load participants of room %s; will retry next tick", room.id)
            self._release(room.id)
            return None

        entrants = []
        excluded = 0
        for p in participants:
            try:
                email = decrypt_email(self._key, p.email_ciphertext)
            except DecryptError:
                logger.warning("Excluding participant %s of room %s: address failed to decrypt", p.id, room.id)
                excluded += 1
                continue
            entrants.append(Entrant(id=p.id, name=p.name, email=email))

        try:
            assignments = assign(entrants, self.rng)
        except ValidationError as e:
            logger.warning("Room %s not drawn (%s, %d eligible); will retry next tick", room.id, e, len(entrants))
            self._release(room.id)
            return None

        sent = failed = 0
        for assignment in assignments:
            try:
                self.notifier.notify(assignment, room)
                sent += 1
            except Exception:
                logger.exception("Notification failed: room=%s participant=%s", room.id, assignment.giver.id)
                failed += 1

        # The pairing cannot be recomputed identically, so the flag is set
        # even when some sends failed.
        completed = False
        double_draw = False
        try:
            if self.store.mark_draw_completed(room.id):
                completed = True
            else:
                double_draw = True
                logger.critical(
                    "Room %s had already been drawn by another worker; its participants were just sent "
                    "a SECOND, different pairing (%d sent, %d failed)",
                    room.id, sent, failed,
                )
        except Exception:
            logger.critical(
                "Room %s was drawn and notified (%d sent, %d failed) but could not be marked drawn; "
                "it will be drawn AGAIN with a different pairing once its draw lease expires",
                room.id, sent, failed, exc_info=True,
            )

        logger.info(
            "Room %s drawn: %d assignments, %d sent, %d failed, %d excluded",
            room.id, len(assignments), sent, failed, excluded,
        )
        return DrawResult(
            room_id=room.id,
            assignments=len(assignments),
            sent=sent,
            failed=failed,
            excluded=excluded,
            completed=completed,
            double_draw=double_draw,
        )

    def _release(self, room_id: str) -> None:
        try:
            self.store.release_draw(room_id)
        except Exception:
            logger.exception("Could not release draw lease on room %s; it expires on its own", room_id)
