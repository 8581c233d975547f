"""Shared fixtures: an on-disk library with a fake fetcher and a fake clock."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from refstore.config import AppConfig
from refstore.library import Library, open_library
from refstore.utils.tasks import TaskScheduler

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Records fetch requests; tests complete or fail them explicitly."""

    def __init__(self) -> None:
        self.requests: List[Tuple[str, Path, object]] = []

    def fetch(self, url, target, listener) -> None:
        self.requests.append((url, Path(target), listener))

    def complete(self, data: bytes = PDF_BYTES, index: int = -1) -> None:
        _, target, listener = self.requests[index]
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        listener(None)

    def fail(self, error: Optional[BaseException] = None, index: int = -1) -> None:
        _, _, listener = self.requests[index]
        listener(error or ConnectionError("connection reset"))


class RecordingObserver:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, list, dict]] = []

    def __call__(self, event, event_type, ids, extra_data) -> None:
        self.events.append((event, event_type, list(ids), dict(extra_data)))

    def of(self, event: str, event_type: str) -> list:
        ids: list = []
        for seen_event, seen_type, seen_ids, _ in self.events:
            if seen_event == event and seen_type == event_type:
                ids.extend(seen_ids)
        return ids


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(data_dir=tmp_path / "data")


@pytest.fixture
def library(config: AppConfig, fetcher: FakeFetcher, clock: FakeClock) -> Library:
    lib = open_library(config, fetcher=fetcher, scheduler=TaskScheduler(clock, clock.sleep))
    yield lib
    lib.close()


@pytest.fixture
def observer(library: Library) -> RecordingObserver:
    recorder = RecordingObserver()
    library.notifier.register_observer(recorder)
    return recorder


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "source"
    directory.mkdir()
    return directory
