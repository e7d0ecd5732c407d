import asyncio
import threading

import pytest

from voicepilot.app.streaming_aggregator import StreamingAggregator, StreamTask

CHUNKS = [f"w{i} " for i in range(15)]


def test_flushes_every_seven_chunks_and_remainder_on_finish(synthesizer):
    aggregator = StreamingAggregator(synthesizer, batch_size=7)
    for chunk in CHUNKS:
        assert aggregator.feed(chunk)
    aggregator.finish()

    assert synthesizer.spoken == ["".join(CHUNKS[:7]), "".join(CHUNKS[7:14]), CHUNKS[14]]
    assert aggregator.text == "".join(CHUNKS)
    assert aggregator.finished


def test_cancel_drops_unspoken_remainder(synthesizer):
    aggregator = StreamingAggregator(synthesizer, batch_size=7)
    for chunk in CHUNKS[:10]:
        aggregator.feed(chunk)

    assert aggregator.cancel() is True
    aggregator.finish()

    assert synthesizer.spoken == ["".join(CHUNKS[:7])]
    assert aggregator.text == "".join(CHUNKS[:10])
    assert aggregator.feed("late") is False


def test_cancel_is_idempotent_and_noop_after_finish(synthesizer):
    aggregator = StreamingAggregator(synthesizer)
    assert aggregator.cancel() is True
    assert aggregator.cancel() is False

    done = StreamingAggregator(synthesizer)
    done.feed("x")
    done.finish()
    assert done.cancel() is False
    assert not done.cancelled


def test_finish_flushes_only_once(synthesizer):
    aggregator = StreamingAggregator(synthesizer)
    aggregator.feed("short")
    aggregator.finish()
    aggregator.finish()
    assert synthesizer.spoken == ["short"]


def test_on_chunk_done_signal(synthesizer):
    aggregator = StreamingAggregator(synthesizer, batch_size=3)
    aggregator.on_chunk("a", False)
    aggregator.on_chunk("b", True)
    assert synthesizer.spoken == ["ab"]


def test_progress_reports_cumulative_text(synthesizer):
    seen = []
    aggregator = StreamingAggregator(synthesizer, on_progress=seen.append)
    aggregator.feed("Hello")
    aggregator.feed(" world")
    assert seen == ["Hello", "Hello world"]


def test_batch_size_must_be_positive(synthesizer):
    with pytest.raises(ValueError):
        StreamingAggregator(synthesizer, batch_size=0)


def test_stream_task_natural_completion(synthesizer):
    aggregator = StreamingAggregator(synthesizer)
    completed = asyncio.run(StreamTask(iter(CHUNKS), aggregator).run())

    assert completed is True
    assert [len(batch.split()) for batch in synthesizer.spoken] == [7, 7, 1]


def test_stream_task_reports_when_worker_exits(synthesizer):
    drained = []
    task = StreamTask(iter(CHUNKS), StreamingAggregator(synthesizer), on_drained=lambda: drained.append(True))
    assert not task.drained.is_set()

    asyncio.run(task.run())

    assert task.drained.is_set()
    assert drained == [True]


def test_stream_task_cancel_while_worker_blocked(synthesizer):
    gate = threading.Event()
    waiting = threading.Event()

    def chunks():
        yield from CHUNKS[:10]
        waiting.set()
        gate.wait(5)
        yield from CHUNKS[10:]

    aggregator = StreamingAggregator(synthesizer)
    task = StreamTask(chunks(), aggregator, on_cancel=gate.set)

    async def scenario():
        runner = asyncio.ensure_future(task.run())
        while not waiting.is_set():
            await asyncio.sleep(0.01)
        assert task.cancel() is True
        assert task.cancel() is False
        return await asyncio.wait_for(runner, 5)

    assert asyncio.run(scenario()) is False
    assert synthesizer.spoken == ["".join(CHUNKS[:7])]
    assert aggregator.text == "".join(CHUNKS[:10])


def test_stream_task_propagates_worker_failure(synthesizer):
    def chunks():
        yield "partial "
        raise RuntimeError("connection reset")

    aggregator = StreamingAggregator(synthesizer)
    with pytest.raises(RuntimeError):
        asyncio.run(StreamTask(chunks(), aggregator).run())
    assert synthesizer.spoken == []
