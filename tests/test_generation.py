import threading

import pytest

from desklm.engines.base import GenerationSpec
from desklm.errors import ModelNotReady
from desklm.generation import Fragment, GenerationEngine, GenerationResult, split_thinking, thinking_phase

from conftest import TINY, FakeEngine, install_model, make_lifecycle

HISTORY = [{"role": "user", "content": "hi"}]


async def _loaded_engine(tmp_path, engine, clock=None):
    lifecycle = make_lifecycle(tmp_path, engine)
    install_model(tmp_path / "models" / "tiny")
    await lifecycle.select(TINY)
    if clock is None:
        return GenerationEngine(lifecycle)
    return GenerationEngine(lifecycle, clock=clock)


@pytest.mark.asyncio
async def test_token_ceiling_is_exact(tmp_path):
    engine = FakeEngine([["a", "b", "c"], ["d", "e", "f"], ["g", "h", "i"]])
    generation = await _loaded_engine(tmp_path, engine)

    result = await generation.run(HISTORY, GenerationSpec(max_new_tokens=5, display_every_n_tokens=2))

    assert result.token_count == 5
    assert result.text == "abcde"
    assert result.cancelled is False
    assert result.ok


@pytest.mark.asyncio
async def test_stops_after_max_tokens_one_per_batch(tmp_path):
    engine = FakeEngine([[f"t{i}"] for i in range(10)])
    generation = await _loaded_engine(tmp_path, engine)

    result = await generation.run(HISTORY, GenerationSpec(max_new_tokens=5, display_every_n_tokens=1))

    assert result.token_count == 5
    assert result.text == "t0t1t2t3t4"
    assert result.cancelled is False


@pytest.mark.asyncio
async def test_cancel_after_second_batch(tmp_path):
    batches = [[f"t{i} "] for i in range(5)]
    engine = FakeEngine(batches)
    generation = await _loaded_engine(tmp_path, engine)
    cancel = threading.Event()
    seen = []

    def _on_fragment(fragment):
        seen.append(fragment.text)
        if len(seen) == 2:
            cancel.set()

    result = await generation.run(
        HISTORY, GenerationSpec(max_new_tokens=100, display_every_n_tokens=1), cancel, _on_fragment
    )

    assert result.cancelled is True
    assert result.text == "t0 t1 "
    assert result.token_count == 2
    assert seen == ["t0 ", "t1 "]


@pytest.mark.asyncio
async def test_fragments_and_trailing_tokens_cover_the_text(tmp_path):
    engine = FakeEngine([["a"], ["b", "c"], ["d"], ["e"]])
    generation = await _loaded_engine(tmp_path, engine)
    items = [
        item
        async for item in generation.generate(HISTORY, GenerationSpec(max_new_tokens=50, display_every_n_tokens=2))
    ]

    fragments = [item for item in items if isinstance(item, Fragment)]
    result = items[-1]
    assert isinstance(result, GenerationResult)
    assert [f.text for f in fragments] == ["abc", "de"]
    assert result.text == "abcde"
    assert result.token_count == 5


@pytest.mark.asyncio
async def test_trailing_tokens_below_display_threshold(tmp_path):
    engine = FakeEngine([["a"], ["b"], ["c"]])
    generation = await _loaded_engine(tmp_path, engine)
    fragments = []

    result = await generation.run(
        HISTORY, GenerationSpec(display_every_n_tokens=2), on_fragment=fragments.append
    )

    assert [f.text for f in fragments] == ["ab"]
    assert result.text == "abc"


@pytest.mark.asyncio
async def test_not_loaded_raises(tmp_path):
    lifecycle = make_lifecycle(tmp_path)
    generation = GenerationEngine(lifecycle)
    with pytest.raises(ModelNotReady):
        await generation.run(HISTORY, GenerationSpec())


@pytest.mark.asyncio
async def test_backend_fault_is_reported(tmp_path):
    engine = FakeEngine([["a", "b"], ["c"]], fault_after=1)
    generation = await _loaded_engine(tmp_path, engine)

    result = await generation.run(HISTORY, GenerationSpec(display_every_n_tokens=10))

    assert result.fault == "model session invalid"
    assert not result.ok
    assert result.text == "ab"


@pytest.mark.asyncio
async def test_thinking_flag_on_fragments(tmp_path):
    engine = FakeEngine([["<think>", "plan"], ["</think>", "answer"]])
    generation = await _loaded_engine(tmp_path, engine)
    fragments = []

    await generation.run(HISTORY, GenerationSpec(display_every_n_tokens=2), on_fragment=fragments.append)

    assert [f.thinking for f in fragments] == [True, False]


@pytest.mark.asyncio
async def test_elapsed_and_rate_use_the_clock(tmp_path):
    ticks = iter([10.0, 12.0])
    engine = FakeEngine([["a", "b", "c", "d"]])
    generation = await _loaded_engine(tmp_path, engine, clock=lambda: next(ticks))

    result = await generation.run(HISTORY, GenerationSpec())

    assert result.elapsed_s == pytest.approx(2.0)
    assert result.tokens_per_second == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_history_reaches_the_backend_as_messages(tmp_path):
    engine = FakeEngine()
    generation = await _loaded_engine(tmp_path, engine)

    await generation.run(
        [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}], GenerationSpec()
    )

    assert engine.prompts[-1] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]


def test_generation_spec_validation():
    with pytest.raises(ValueError):
        GenerationSpec(max_new_tokens=0)
    with pytest.raises(ValueError):
        GenerationSpec(display_every_n_tokens=0)


def test_thinking_helpers():
    assert thinking_phase("<think>still going")
    assert not thinking_phase("<think>done</think> answer")
    assert not thinking_phase("plain")
    assert split_thinking("<think>plan</think>The answer") == ("plan", "The answer")
    assert split_thinking("<think>a</think>x<think>b") == ("a\nb", "x")
    assert split_thinking("no markup") == ("", "no markup")
