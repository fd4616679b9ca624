from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any

from fastapi import WebSocket
from pydantic import ValidationError

from loadout_ocr.errors import SinkError
from loadout_ocr.models import DetectionRecord

logger = logging.getLogger("loadout-ocr.store")


class JsonlDetectionStore:
    """Append-only detection log, one JSON record per line.

    Each append is a single write of one complete line followed by fsync, so
    a crash can at worst leave a torn last line; earlier records are never
    rewritten.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def ensure(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def append(self, record: DetectionRecord) -> None:
        line = record.model_dump_json(by_alias=True) + "\n"
        with self._lock:
            try:
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.flush()
                    os.fsync(fh.fileno())
            except OSError as e:
                raise SinkError(f"cannot append to {self.path}: {e}") from e

    def records(self) -> list[DetectionRecord]:
        """All stored records in insertion order."""
        if not self.path.exists():
            return []
        out: list[DetectionRecord] = []
        with self.path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(DetectionRecord.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"[store] skipping unreadable line {lineno} in {self.path}: {e.error_count()} errors")
        return out


class SubscriberHub:
    """Live WebSocket subscribers to new detections.

    ``publish`` may be called from any worker thread; the actual sends run on
    the server event loop attached at startup.
    """

    def __init__(self) -> None:
        self._subscribers: set[WebSocket] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    def register(self, websocket: WebSocket) -> None:
        self._subscribers.add(websocket)
        logger.info(f"🟢 subscriber connected ({len(self._subscribers)} live)")

    def unregister(self, websocket: WebSocket) -> None:
        self._subscribers.discard(websocket)
        logger.info(f"subscriber gone ({len(self._subscribers)} live)")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, record: DetectionRecord) -> None:
        if self._loop is None or not self._subscribers:
            return
        payload = {"event": "new_detection", "detection": record.model_dump(mode="json", by_alias=True)}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._loop.create_task(self.broadcast(payload))
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast(payload), self._loop)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        for websocket in list(self._subscribers):
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.warning(f"dropping subscriber after failed send: {e}")
                self._subscribers.discard(websocket)


class StoreAndBroadcastSink:
    """Detection sink that persists a record, then announces it to subscribers."""

    def __init__(self, store: JsonlDetectionStore, hub: SubscriberHub) -> None:
        self.store = store
        self.hub = hub

    def accept(self, record: DetectionRecord) -> None:
        self.store.append(record)
        logger.info(f"💾 stored detection {record.id} combat_power={record.combat_power} regions={record.regions}")
        self.hub.publish(record)
