import asyncio

import pytest

from catchup.pipeline.batch_runner import BatchExecutionError, process_in_batches


class _Recorder:
    def __init__(self):
        self.events = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def sleep(self, seconds):
        self.events.append(("sleep", seconds))

    async def process(self, item):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.events.append(("start", item))
        # Later items in a batch finish first
        await asyncio.sleep(0.001 * (5 - item % 5))
        self.in_flight -= 1
        return item * 10


def test_twelve_items_run_in_three_batches():
    recorder = _Recorder()

    results = asyncio.run(
        process_in_batches(list(range(12)), 5, recorder.process, delay_seconds=1.0, sleep=recorder.sleep)
    )

    assert results == [i * 10 for i in range(12)]
    assert recorder.max_in_flight == 5

    batches, current = [], []
    for kind, value in recorder.events:
        if kind == "sleep":
            batches.append(current)
            current = []
        else:
            current.append(value)
    batches.append(current)
    assert [len(b) for b in batches] == [5, 5, 2]
    assert [e for e in recorder.events if e[0] == "sleep"] == [("sleep", 1.0), ("sleep", 1.0)]


def test_no_delay_after_single_batch():
    recorder = _Recorder()

    asyncio.run(process_in_batches([1, 2], 5, recorder.process, delay_seconds=2.0, sleep=recorder.sleep))

    assert not [e for e in recorder.events if e[0] == "sleep"]


def test_empty_input():
    assert asyncio.run(process_in_batches([], 3, _Recorder().process)) == []


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        asyncio.run(process_in_batches([1], 0, _Recorder().process))


def test_failure_stops_later_batches_and_keeps_partial_results():
    started = []

    async def processor(item):
        started.append(item)
        if item == 3:
            raise RuntimeError("boom")
        return item

    with pytest.raises(BatchExecutionError) as info:
        asyncio.run(process_in_batches(list(range(6)), 2, processor))

    assert info.value.results == [0, 1, 2, None]
    assert [i for i, _ in info.value.errors] == [3]
    assert "boom" in str(info.value)
    assert sorted(started) == [0, 1, 2, 3]
