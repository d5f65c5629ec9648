"""Unit tests for finalizing upload sessions into recordings."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.recordings.errors import InvalidStateError, NoDataError, UnknownSessionError
from app.recordings.finalizer import build_filename, download_url_for
from app.recordings.schemas import RecordingType, SessionStatus


async def _session_with_chunks(service, chunks, **kwargs):
    session = await service.start_session("alice", "room-1", RecordingType.SCREEN, **kwargs)
    for index, payload in chunks:
        await service.receiver.accept(session.id, index, payload)
    return session


def _recording_files(service):
    return sorted(p.name for p in service.finalizer.recordings_dir.iterdir())


class TestFinalizeOrdering:
    @pytest.mark.asyncio
    async def test_out_of_order_arrival(self, upload_service):
        """Index order, not arrival order, decides the content."""
        session = await upload_service.start_session("alice", "room-1", RecordingType.SCREEN)
        await upload_service.receiver.accept(session.id, 0, b"AAA")
        await upload_service.receiver.accept(session.id, 2, b"CCC")
        ack = await upload_service.receiver.accept(session.id, 1, b"BBB", is_final=True)

        recording = await session.finalize_task

        assert recording.filename == ack.filename
        assert recording.sizeBytes == 9
        assert recording.chunkCount == 3
        assert (upload_service.finalizer.recordings_dir / recording.filename).read_bytes() == b"AAABBBCCC"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [[0, 1, 2, 3], [3, 2, 1, 0], [2, 0, 3, 1]])
    async def test_permutations_produce_identical_output(self, upload_service, order):
        payloads = {0: b"zero-", 1: b"one-", 2: b"two-", 3: b"three"}
        session = await _session_with_chunks(upload_service, [(i, payloads[i]) for i in order])

        recording = await upload_service.finalizer.finalize(session.id)

        content = (upload_service.finalizer.recordings_dir / recording.filename).read_bytes()
        assert content == b"zero-one-two-three"

    @pytest.mark.asyncio
    async def test_replacement_is_used(self, upload_service):
        """A re-uploaded index replaces the earlier payload in the output."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA"), (0, b"XYZ")])
        assert session.total_size == 3

        recording = await upload_service.finalizer.finalize(session.id)

        assert recording.sizeBytes == 3
        assert (upload_service.finalizer.recordings_dir / recording.filename).read_bytes() == b"XYZ"


class TestFinalizeCleanup:
    @pytest.mark.asyncio
    async def test_staging_removed_and_session_unregistered(self, upload_service):
        session = await _session_with_chunks(upload_service, [(0, b"AAA"), (1, b"BBB")])
        await upload_service.finalizer.finalize(session.id)

        assert session.status == SessionStatus.COMPLETED
        assert not upload_service.chunk_store.session_dir(session.id).exists()
        with pytest.raises(UnknownSessionError):
            await upload_service.registry.get(session.id)

    @pytest.mark.asyncio
    async def test_recording_handed_to_store(self, upload_service):
        """The finalized recording and its chat entry are persisted."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA")], title="Demo")
        recording = await upload_service.finalizer.finalize(session.id)

        info = upload_service.store.get_recording(recording.filename)
        assert info is not None
        assert info.title == "Demo"
        assert info.fileSize == 3
        messages = upload_service.store.get_room_messages("room-1")
        assert len(messages) == 1
        assert messages[0].downloadUrl == download_url_for(recording.filename)

    @pytest.mark.asyncio
    async def test_duration_from_created_at(self, upload_service):
        session = await _session_with_chunks(upload_service, [(0, b"A")])
        session.created_at -= 125
        recording = await upload_service.finalizer.finalize(session.id)
        assert 125 <= recording.durationSeconds <= 127

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_finalize(self, upload_service):
        session = await _session_with_chunks(upload_service, [(0, b"AAA")])
        with patch.object(upload_service.store, "save_recording", side_effect=RuntimeError("db down")):
            recording = await upload_service.finalizer.finalize(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert (upload_service.finalizer.recordings_dir / recording.filename).exists()


class TestFinalizeEmpty:
    @pytest.mark.asyncio
    async def test_empty_session_raises_no_data(self, upload_service):
        """Finalizing without chunks fails, produces no file, and marks ERROR."""
        session = await upload_service.start_session("alice", "room-1", RecordingType.VOICE)

        with pytest.raises(NoDataError):
            await upload_service.finalizer.finalize(session.id)

        assert session.status == SessionStatus.ERROR
        assert _recording_files(upload_service) == []
        assert not upload_service.chunk_store.session_dir(session.id).exists()

    @pytest.mark.asyncio
    async def test_error_session_cannot_be_finalized_again(self, upload_service):
        session = await upload_service.start_session("alice", "room-1", RecordingType.VOICE)
        with pytest.raises(NoDataError):
            await upload_service.finalizer.finalize(session.id)
        with pytest.raises(InvalidStateError):
            await upload_service.finalizer.finalize(session.id)


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_finalize_produces_one_file(self, upload_service):
        """Two concurrent triggers share one execution and one output file."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA"), (1, b"BBB")])

        first, second = await asyncio.gather(
            upload_service.finalizer.finalize(session.id),
            upload_service.finalizer.finalize(session.id),
        )

        assert first == second
        assert _recording_files(upload_service) == [first.filename]
        assert len(upload_service.store.list_recordings()) == 1

    @pytest.mark.asyncio
    async def test_retry_after_completion_returns_same_result(self, upload_service):
        session = await _session_with_chunks(upload_service, [(0, b"AAA")])
        first = await upload_service.finalizer.finalize(session.id)
        again = await upload_service.finalizer.finalize(session.id)

        assert again == first
        assert _recording_files(upload_service) == [first.filename]

    @pytest.mark.asyncio
    async def test_handler_called_once(self, upload_service):
        """Joined finalize calls hand the recording off exactly once."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA")])
        handler = AsyncMock()
        upload_service.finalizer._on_finalized = handler

        await asyncio.gather(*[upload_service.finalizer.finalize(session.id) for _ in range(5)])

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_session(self, upload_service):
        with pytest.raises(UnknownSessionError):
            await upload_service.finalizer.finalize("does-not-exist")


class TestFinalizeFailure:
    @pytest.mark.asyncio
    async def test_io_failure_leaves_error_session_with_chunks(self, upload_service):
        """A read failure mid-concatenation marks ERROR and keeps unconsumed chunks."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA"), (1, b"BBB")])
        second_chunk = session.chunks[1].storage_path
        real_open = upload_service.chunk_store.open_chunk

        def flaky_open(path):
            if path == second_chunk:
                raise OSError("read error")
            return real_open(path)

        with patch.object(upload_service.chunk_store, "open_chunk", side_effect=flaky_open):
            with pytest.raises(OSError, match="read error"):
                await upload_service.finalizer.finalize(session.id)

        assert session.status == SessionStatus.ERROR
        assert session.error == "read error"
        assert second_chunk.exists()
        assert await upload_service.registry.get(session.id) is session


class TestFilename:
    @pytest.mark.asyncio
    async def test_owner_is_sanitized(self, upload_service):
        session = await upload_service.start_session("../../etc/pass wd", "r", RecordingType.VOICE)
        filename = build_filename(session, 1700000000.5)
        assert filename == f"voice-etc_pass_wd-1700000000500-{session.id[:8]}.webm"
        assert "/" not in filename


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_waits_for_running_finalize(self, upload_service):
        """Stopping the service lets an in-flight finalize complete and persist."""
        session = await _session_with_chunks(upload_service, [(0, b"AAA")])
        ack = await upload_service.receiver.accept(session.id, 1, b"BBB", is_final=True)

        await upload_service.stop()

        assert session.status == SessionStatus.COMPLETED
        assert (upload_service.finalizer.recordings_dir / ack.filename).read_bytes() == b"AAABBB"
        assert upload_service.store.get_recording(ack.filename) is not None

    @pytest.mark.asyncio
    async def test_drain_without_running_tasks(self, upload_service):
        await upload_service.finalizer.drain()

    @pytest.mark.asyncio
    async def test_drain_tolerates_failed_finalize(self, upload_service):
        session = await _session_with_chunks(upload_service, [(0, b"AAA")])
        with patch.object(upload_service.chunk_store, "open_chunk", side_effect=OSError("gone")):
            await upload_service.finalizer.trigger(session.id)
            await upload_service.finalizer.drain()

        assert session.status == SessionStatus.ERROR
