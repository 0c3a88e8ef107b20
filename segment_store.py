from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ChannelEntry:
    segment_id: Optional[int]
    text: str
    failed: bool = False


class SegmentStore:
    def __init__(self, channels: tuple[str, ...] = ()) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, list[ChannelEntry]] = {channel: [] for channel in channels}
        self._interim: dict[str, str] = {channel: "" for channel in channels}
        self._listener: Optional[Callable[[Optional[str]], None]] = None

    def set_change_listener(self, listener: Optional[Callable[[Optional[str]], None]]) -> None:
        self._listener = listener

    def channels(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def append(self, channel: str, text: str, segment_id: Optional[int] = None, failed: bool = False) -> ChannelEntry:
        entry = ChannelEntry(segment_id=segment_id, text=text, failed=failed)
        with self._lock:
            self._entries.setdefault(channel, []).append(entry)
            self._interim.setdefault(channel, "")
        self._notify(channel)
        return entry

    def set_interim(self, channel: str, text: str) -> None:
        with self._lock:
            self._entries.setdefault(channel, [])
            self._interim[channel] = text
        self._notify(channel)

    def clear_interim(self, channel: str) -> None:
        with self._lock:
            if not self._interim.get(channel):
                return
            self._interim[channel] = ""
        self._notify(channel)

    def interim(self, channel: str) -> str:
        with self._lock:
            return self._interim.get(channel, "")

    def snapshot(self, channel: str) -> list[str]:
        with self._lock:
            return [entry.text for entry in self._entries.get(channel, [])]

    def entries(self, channel: str) -> list[ChannelEntry]:
        with self._lock:
            return list(self._entries.get(channel, []))

    def clear(self) -> None:
        with self._lock:
            for channel in self._entries:
                self._entries[channel] = []
                self._interim[channel] = ""
        self._notify(None)

    def _notify(self, channel: Optional[str]) -> None:
        if self._listener is not None:
            self._listener(channel)
