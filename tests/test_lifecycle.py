import asyncio
import threading

import pytest

from desklm.catalog import GIB, ModelCategory, ModelDescriptor
from desklm.errors import ModelNotReady
from desklm.events import DownloadProgress, DownloadStarted, StateChanged
from desklm.lifecycle import (
    Downloading,
    Failed,
    FailureKind,
    Idle,
    Loaded,
    Loading,
    describe_state,
)

from conftest import SMALL, TINY, FakeDownloader, FakeEngine, RemoteFakeEngine, install_model, make_lifecycle


def _record(lifecycle):
    states = []
    lifecycle.bus.subscribe(lambda event: states.append(event.state), StateChanged)
    return states


@pytest.mark.asyncio
async def test_select_downloads_then_loads(tmp_path):
    engine = FakeEngine()
    downloader = FakeDownloader()
    lifecycle = make_lifecycle(tmp_path, engine, downloader)
    states = _record(lifecycle)

    state = await lifecycle.select(TINY)

    assert state == Loaded("tiny")
    assert downloader.calls == ["tiny"]
    assert engine.load_calls == ["tiny"]
    assert states == [
        Downloading("tiny", 0.0),
        Downloading("tiny", 0.25),
        Downloading("tiny", 0.5),
        Downloading("tiny", 1.0),
        Loading("tiny"),
        Loaded("tiny"),
    ]
    assert lifecycle.descriptor is TINY


@pytest.mark.asyncio
async def test_download_events_carry_one_id(tmp_path):
    lifecycle = make_lifecycle(tmp_path, downloader=FakeDownloader(fractions=(0.5, 0.3, 0.9)))
    events = []
    lifecycle.bus.subscribe(events.append, (DownloadStarted, DownloadProgress))

    await lifecycle.select(TINY)

    assert isinstance(events[0], DownloadStarted)
    assert {event.download_id for event in events} == {1}
    # 0.3 regressed and is dropped
    assert [event.fraction for event in events[1:]] == [0.5, 0.9]


@pytest.mark.asyncio
async def test_installed_model_skips_download(tmp_path):
    downloader = FakeDownloader()
    lifecycle = make_lifecycle(tmp_path, downloader=downloader)
    install_model(tmp_path / "models" / "tiny")

    assert await lifecycle.select(TINY) == Loaded("tiny")
    assert downloader.calls == []


@pytest.mark.asyncio
async def test_select_same_model_is_a_no_op(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    await lifecycle.select(TINY)
    await lifecycle.select(TINY)
    assert engine.load_calls == ["tiny"]


@pytest.mark.asyncio
async def test_download_failure_ends_failed(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine, FakeDownloader(fail="connection reset"))

    state = await lifecycle.select(TINY)

    assert isinstance(state, Failed)
    assert state.kind is FailureKind.DOWNLOAD
    assert "connection reset" in state.reason
    assert engine.load_calls == []


@pytest.mark.asyncio
async def test_incomplete_download_is_removed(tmp_path):
    lifecycle = make_lifecycle(tmp_path, downloader=FakeDownloader(install=False))
    (tmp_path / "models" / "tiny").mkdir(parents=True)

    state = await lifecycle.select(TINY)

    assert isinstance(state, Failed)
    assert state.kind is FailureKind.DOWNLOAD
    assert not (tmp_path / "models" / "tiny").exists()


@pytest.mark.asyncio
async def test_load_failure_ends_failed(tmp_path):
    engine = FakeEngine(fail_load="out of memory")
    lifecycle = make_lifecycle(tmp_path, engine)

    state = await lifecycle.select(TINY)

    assert isinstance(state, Failed)
    assert state.kind is FailureKind.LOAD
    assert "out of memory" in state.reason
    assert engine.unload_calls == 1
    assert lifecycle.descriptor is None


@pytest.mark.asyncio
async def test_strict_guardrail_blocks_oversized_model(tmp_path):
    big = ModelDescriptor("big", "Big", "Test", 8_000_000_000, ModelCategory.CORE, "test/big")
    engine = FakeEngine()
    downloader = FakeDownloader()
    lifecycle = make_lifecycle(tmp_path, engine, downloader, total=16_000_000_000, level="strict")
    states = _record(lifecycle)

    state = await lifecycle.select(big)

    assert isinstance(state, Failed)
    assert state.kind is FailureKind.GUARDRAIL
    assert "guardrails limit" in state.reason
    assert downloader.calls == []
    assert engine.load_calls == []
    assert states == [state]


@pytest.mark.asyncio
async def test_guardrail_off_admits_anything(tmp_path):
    lifecycle = make_lifecycle(tmp_path, total=1 * GIB, level="off")
    assert await lifecycle.select(SMALL) == Loaded("small")


@pytest.mark.asyncio
async def test_remote_engine_skips_guardrail_and_download(tmp_path):
    engine = RemoteFakeEngine()
    downloader = FakeDownloader()
    lifecycle = make_lifecycle(tmp_path, engine, downloader, total=1 * GIB, level="strict")

    assert await lifecycle.select(SMALL) == Loaded("small")
    assert downloader.calls == []


@pytest.mark.asyncio
async def test_cancel_download_returns_to_idle(tmp_path):
    downloader = FakeDownloader()
    downloader.gate = asyncio.Event()
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine, downloader)

    task = asyncio.create_task(lifecycle.select(TINY))
    await downloader.started.wait()
    await asyncio.sleep(0)
    assert lifecycle.busy

    assert await lifecycle.cancel() is True
    assert await task == Idle()
    assert lifecycle.state == Idle()
    assert engine.load_calls == []
    assert not lifecycle.busy


@pytest.mark.asyncio
async def test_cancel_when_idle_returns_false(tmp_path):
    lifecycle = make_lifecycle(tmp_path)
    assert await lifecycle.cancel() is False
    assert lifecycle.state == Idle()


class _BlockingLoadEngine(FakeEngine):
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def load(self, descriptor, model_path):
        self.entered.set()
        self.release.wait(5)
        super().load(descriptor, model_path)


@pytest.mark.asyncio
async def test_cancel_during_load_unloads_late_result(tmp_path):
    engine = _BlockingLoadEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    install_model(tmp_path / "models" / "tiny")

    task = asyncio.create_task(lifecycle.select(TINY))
    await asyncio.to_thread(engine.entered.wait, 5)
    assert lifecycle.state == Loading("tiny")

    assert await lifecycle.cancel() is True
    assert await task == Idle()

    engine.release.set()
    install_model(tmp_path / "models" / "small")
    # the next transition waits for the abandoned load and discards it
    assert await lifecycle.switch_to(SMALL) == Loaded("small")
    assert engine.load_calls == ["tiny", "small"]
    assert engine.unload_calls >= 1
    assert engine.loaded == "small"


@pytest.mark.asyncio
async def test_switch_releases_previous_model(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    await lifecycle.select(TINY)
    states = _record(lifecycle)

    assert await lifecycle.switch_to(SMALL) == Loaded("small")
    assert engine.unload_calls == 1
    assert states[0] == Idle()
    assert states[-1] == Loaded("small")


@pytest.mark.asyncio
async def test_unload_failure_is_tolerated(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    await lifecycle.select(TINY)
    engine.fail_unload = True

    assert await lifecycle.switch_to(SMALL) == Loaded("small")


@pytest.mark.asyncio
async def test_download_only_ends_idle(tmp_path):
    engine = FakeEngine()
    downloader = FakeDownloader()
    lifecycle = make_lifecycle(tmp_path, engine, downloader)
    await lifecycle.select(SMALL)

    state = await lifecycle.download(TINY)

    assert state == Idle()
    assert downloader.calls == ["small", "tiny"]
    assert engine.unload_calls == 1
    assert lifecycle.descriptor is None


@pytest.mark.asyncio
async def test_require_loaded_and_invalidate(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    with pytest.raises(ModelNotReady):
        lifecycle.require_loaded()

    await lifecycle.select(TINY)
    assert lifecycle.require_loaded() is engine

    await lifecycle.invalidate("session lost")
    assert lifecycle.state == Idle()
    with pytest.raises(ModelNotReady):
        lifecycle.require_loaded()


@pytest.mark.asyncio
async def test_report_missing(tmp_path):
    lifecycle = make_lifecycle(tmp_path)
    state = await lifecycle.report_missing("ghost", "Model not found: ghost")
    assert state == Failed("ghost", "Model not found: ghost", FailureKind.NOT_FOUND)


def test_describe_state():
    assert describe_state(Idle()) == "Idle"
    assert describe_state(Downloading("tiny", 0.5)) == "Downloading tiny (50%)"
    assert describe_state(Failed("tiny", "boom", FailureKind.LOAD)) == "Failed: boom"


@pytest.mark.asyncio
async def test_select_releases_a_different_loaded_model(tmp_path):
    engine = FakeEngine()
    lifecycle = make_lifecycle(tmp_path, engine)
    await lifecycle.select(TINY)
    states = _record(lifecycle)

    assert await lifecycle.select(SMALL) == Loaded("small")

    assert engine.unload_calls == 1
    assert states[0] == Idle()
    assert engine.loaded == "small"
