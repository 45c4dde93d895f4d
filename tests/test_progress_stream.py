"""Tests for the progress channel and the polling progress stream"""
import asyncio

from models.canonical import JobStage, JobStatus, ProgressSnapshot
from services.progress_channel import ProgressChannel
from services.progress_stream import ProgressStream


def _snapshot(stage, percentage, status=JobStatus.PROCESSING, analysis_id="a1"):
    return ProgressSnapshot(analysis_id=analysis_id, status=status, stage=stage, percentage=percentage)


class ScriptedFetch:
    """Returns the scripted snapshots in order, repeating the last one"""

    def __init__(self, snapshots):
        self.snapshots = list(snapshots)
        self.calls = 0

    def __call__(self, analysis_id):
        index = min(self.calls, len(self.snapshots) - 1)
        self.calls += 1
        snapshot = self.snapshots[index]
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot


def _collect(stream, analysis_id="a1"):
    async def run():
        return [snapshot async for snapshot in stream.subscribe(analysis_id)]

    return asyncio.run(run())


def test_stream_ends_after_completed_snapshot():
    fetch = ScriptedFetch([
        _snapshot(JobStage.WAITING, 0),
        _snapshot(JobStage.DETECTING_COMPONENTS, 5),
        _snapshot(JobStage.ANALYZING_STRIDE, 60),
        _snapshot(JobStage.COMPLETED, 100, JobStatus.COMPLETED),
    ])

    snapshots = _collect(ProgressStream(fetch, interval=0.01))

    assert [s.percentage for s in snapshots] == [0, 5, 60, 100]
    assert snapshots[-1].is_terminal
    assert fetch.calls == 4


def test_stream_ends_after_failed_snapshot():
    fetch = ScriptedFetch([
        _snapshot(JobStage.DETECTING_COMPONENTS, 5),
        _snapshot(JobStage.FAILED, 0, JobStatus.FAILED),
    ])

    snapshots = _collect(ProgressStream(fetch, interval=0.01))

    assert [s.status for s in snapshots] == [JobStatus.PROCESSING, JobStatus.FAILED]


def test_fetch_error_is_reported_as_failure():
    fetch = ScriptedFetch([
        _snapshot(JobStage.DETECTING_COMPONENTS, 5),
        LookupError("Analysis a1 not found"),
    ])

    snapshots = _collect(ProgressStream(fetch, interval=0.01))

    assert len(snapshots) == 2
    assert snapshots[-1].status == JobStatus.FAILED
    assert snapshots[-1].stage == JobStage.FAILED
    assert snapshots[-1].message == "Analysis a1 not found"
    assert snapshots[-1].analysis_id == "a1"


def test_channel_push_wakes_the_stream_early():
    channel = ProgressChannel()
    fetch = ScriptedFetch([
        _snapshot(JobStage.ANALYZING_STRIDE, 45),
        _snapshot(JobStage.COMPLETED, 100, JobStatus.COMPLETED),
    ])
    stream = ProgressStream(fetch, channel=channel, interval=30.0)

    async def run():
        snapshots = []
        async for snapshot in stream.subscribe("a1"):
            snapshots.append(snapshot)
            if not snapshot.is_terminal:
                channel.publish(_snapshot(JobStage.COMPLETED, 100, JobStatus.COMPLETED))
        return snapshots

    snapshots = asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert [s.percentage for s in snapshots] == [45, 100]
    # Subscription is released once the stream ends
    assert channel._subscriptions == {}


def test_channel_only_delivers_matching_analysis():
    channel = ProgressChannel()
    received = []
    channel.add_listener(received.append)

    async def run():
        subscription = channel.subscribe("a1")
        channel.publish(_snapshot(JobStage.ANALYZING_STRIDE, 50, analysis_id="other"))
        assert await subscription.wait(0.05) is None
        channel.publish(_snapshot(JobStage.ANALYZING_STRIDE, 50, analysis_id="a1"))
        pushed = await subscription.wait(1.0)
        channel.unsubscribe(subscription)
        return pushed

    pushed = asyncio.run(run())

    assert pushed.analysis_id == "a1"
    assert [s.analysis_id for s in received] == ["other", "a1"]


def test_failing_listener_does_not_break_publish():
    channel = ProgressChannel()
    received = []

    def broken(snapshot):
        raise RuntimeError("listener bug")

    channel.add_listener(broken)
    channel.add_listener(received.append)

    channel.publish(_snapshot(JobStage.DETECTING_COMPONENTS, 5))

    assert len(received) == 1
