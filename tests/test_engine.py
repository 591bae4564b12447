from pathlib import Path

import anyio
import msgspec
import pytest

from belaynish.engine import (
    CANCELED_TEXT,
    MAX_FAILURE_CHARS,
    NO_OUTPUT_TEXT,
    JobEngine,
    progress_surface,
)
from belaynish.jobs import JobRecord, JsonJobStore
from belaynish.notifier import SentMessage


class _FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        self._now = value


class _MemoryStore:
    def __init__(self) -> None:
        self.records: dict[str, JobRecord] = {}
        self.writes: list[str] = []
        self.deletes: list[str] = []

    async def get(self, job_id: str) -> JobRecord | None:
        record = self.records.get(job_id)
        return None if record is None else msgspec.structs.replace(record)

    async def put(self, job_id: str, record: JobRecord) -> None:
        self.writes.append(job_id)
        self.records[job_id] = msgspec.structs.replace(record)

    async def delete(self, job_id: str) -> None:
        self.deletes.append(job_id)
        self.records.pop(job_id, None)


class _FakeNotifier:
    def __init__(self, *, echo_captions: bool = True) -> None:
        self._next_id = 100
        self.echo_captions = echo_captions
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()

    def _sent(self, *, is_media: bool = False, caption: str | None = None) -> SentMessage:
        message_id = self._next_id
        self._next_id += 1
        return SentMessage(
            message_id=message_id,
            is_media=is_media,
            caption=caption if self.echo_captions else None,
        )

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def send_text(self, chat_id, text):
        self._record("send_text", chat_id, text)
        return self._sent()

    async def send_photo(self, chat_id, url, caption=None):
        self._record("send_photo", chat_id, url, caption)
        return self._sent(is_media=True, caption=caption)

    async def send_video(self, chat_id, url, caption=None):
        self._record("send_video", chat_id, url, caption)
        return self._sent(is_media=True, caption=caption)

    async def send_document(self, chat_id, url, caption=None):
        self._record("send_document", chat_id, url, caption)
        return self._sent(caption=caption)

    async def edit_text(self, chat_id, message_id, text):
        self._record("edit_text", chat_id, message_id, text)
        return True

    async def edit_caption(self, chat_id, message_id, caption):
        self._record("edit_caption", chat_id, message_id, caption)
        return True

    async def send_typing(self, chat_id) -> None:
        _ = chat_id


def _engine(
    store=None, notifier=None, clock=None
) -> tuple[JobEngine, _MemoryStore, _FakeNotifier, _FakeClock]:
    store = store or _MemoryStore()
    notifier = notifier or _FakeNotifier()
    clock = clock or _FakeClock()
    return JobEngine(store=store, notifier=notifier, clock=clock), store, notifier, clock


async def _seed(store: _MemoryStore, record: JobRecord) -> None:
    await store.put(record.job_id, record)
    store.writes.clear()


@pytest.mark.anyio
async def test_progress_then_success_scenario() -> None:
    engine, store, notifier, clock = _engine()
    await _seed(store, JobRecord(job_id="p1", chat_id=42, caption="cat"))

    await engine.handle({"id": "p1", "status": "starting", "progress": 0.1})

    assert notifier.calls == [("send_text", 42, "Processing: 10%")]
    record = await store.get("p1")
    assert record is not None
    assert record.progress_message_id == 100
    assert record.progress_is_media is False
    assert record.last_percent == 10
    assert record.last_update_at_ms == 1_000_000

    clock.set(1_000.5)
    await engine.handle({"id": "p1", "status": "processing", "progress": 0.5})

    assert notifier.calls[-1] == ("edit_text", 42, 100, "Processing: 50%")

    clock.set(1_001.0)
    await engine.handle(
        {"id": "p1", "status": "succeeded", "output": "https://x/out.mp4"}
    )

    assert notifier.calls[-1] == ("send_video", 42, "https://x/out.mp4", "cat")
    assert len(notifier.calls) == 3
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_lazy_recovery_from_embedded_context() -> None:
    engine, store, notifier, _ = _engine()

    await engine.handle(
        {
            "id": "abc",
            "status": "processing",
            "logs": ["sampling 12%"],
            "input": {"chat_id": 7, "caption": "hi"},
        }
    )

    record = await store.get("abc")
    assert record is not None
    assert record.chat_id == 7
    assert record.caption == "hi"
    assert record.last_percent == 12
    assert notifier.calls == [("send_text", 7, "Processing: 12%")]

    await engine.handle(
        {
            "id": "abc",
            "status": "succeeded",
            "output": ["https://x/a.png"],
            "input": {"chat_id": 7, "caption": "hi"},
        }
    )

    assert notifier.calls[-1] == ("send_photo", 7, "https://x/a.png", "hi")
    assert await store.get("abc") is None


@pytest.mark.anyio
async def test_uncorrelatable_event_is_discarded() -> None:
    engine, store, notifier, _ = _engine()

    await engine.handle({"status": "succeeded", "output": "https://x/a.mp4"})
    await engine.handle({"status": "processing", "input": {"prompt": "x"}})

    assert store.writes == []
    assert store.deletes == []
    assert notifier.calls == []


@pytest.mark.anyio
async def test_chat_id_without_job_id_is_discarded() -> None:
    engine, store, notifier, _ = _engine()

    await engine.handle({"status": "processing", "input": {"chat_id": 7}})

    assert store.writes == []
    assert notifier.calls == []


@pytest.mark.anyio
async def test_unknown_job_without_context_is_a_no_op() -> None:
    engine, store, notifier, _ = _engine()

    await engine.handle(
        {"id": "zzz", "status": "succeeded", "output": "https://x/a.mp4"}
    )

    assert store.writes == []
    assert store.deletes == []
    assert notifier.calls == []


@pytest.mark.anyio
async def test_replayed_success_after_retirement_is_a_no_op() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(store, JobRecord(job_id="p1", chat_id=42, caption="cat"))
    payload = {
        "id": "p1",
        "status": "succeeded",
        "output": "https://x/out.mp4",
        "input": {"telegram_chat_id": 42, "prompt": "cat"},
    }

    await engine.handle(payload)
    delivered = list(notifier.calls)
    await engine.handle(payload)

    assert notifier.calls == delivered
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_replayed_success_in_fresh_engine_without_context() -> None:
    store = _MemoryStore()
    engine, _, notifier, _ = _engine(store=store)

    await engine.handle(
        {"id": "p1", "status": "succeeded", "output": "https://x/out.mp4"}
    )

    assert notifier.calls == []
    assert store.writes == []


@pytest.mark.anyio
async def test_same_percent_notifies_once_per_interval() -> None:
    engine, store, notifier, clock = _engine()
    await _seed(store, JobRecord(job_id="p1", chat_id=1))

    for step in range(20):
        clock.set(1_000.0 + step * 0.5)
        await engine.handle({"id": "p1", "status": "processing", "progress": 0.3})

    assert notifier.calls == [("send_text", 1, "Processing: 30%")]

    clock.set(1_015.0)
    await engine.handle({"id": "p1", "status": "processing", "progress": 0.3})

    assert notifier.calls[-1] == ("edit_text", 1, 100, "Processing: 30%")
    assert len(notifier.calls) == 2


@pytest.mark.anyio
async def test_small_delta_waits_for_larger_one() -> None:
    engine, store, notifier, clock = _engine()
    await _seed(
        store,
        JobRecord(
            job_id="p1",
            chat_id=1,
            progress_message_id=5,
            last_percent=20,
            last_update_at_ms=1_000_000,
        ),
    )

    clock.set(1_001.0)
    await engine.handle({"id": "p1", "status": "processing", "progress": 0.22})
    clock.set(1_002.0)
    await engine.handle({"id": "p1", "status": "processing", "progress": 0.27})

    assert notifier.calls == [("edit_text", 1, 5, "Processing: 27%")]


@pytest.mark.anyio
async def test_unknown_percent_renders_processing_and_keeps_last_percent() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(store, JobRecord(job_id="p1", chat_id=1, last_percent=40))

    await engine.handle({"id": "p1", "status": "processing"})

    assert notifier.calls == [("send_text", 1, "Processing: processing...")]
    record = await store.get("p1")
    assert record is not None
    assert record.last_percent == 40
    assert record.last_update_at_ms == 1_000_000


@pytest.mark.anyio
async def test_media_progress_surface_edits_caption() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store,
        JobRecord(job_id="p1", chat_id=1, progress_message_id=9, progress_is_media=True),
    )

    await engine.handle({"id": "p1", "status": "processing", "progress": 0.6})

    assert notifier.calls == [("edit_caption", 1, 9, "Processing: 60%")]


@pytest.mark.anyio
async def test_progress_notifier_failure_is_swallowed_and_state_persisted() -> None:
    engine, store, notifier, _ = _engine()
    notifier.fail_on.add("send_text")
    await _seed(store, JobRecord(job_id="p1", chat_id=1))

    await engine.handle({"id": "p1", "status": "processing", "progress": 0.5})

    record = await store.get("p1")
    assert record is not None
    assert record.progress_message_id is None
    assert record.last_percent == 50
    assert store.writes == ["p1"]


@pytest.mark.anyio
async def test_failure_reports_bounded_payload_and_retires() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle({"id": "p1", "status": "failed", "error": "x" * 5000})

    assert len(notifier.calls) == 1
    name, chat_id, text = notifier.calls[0]
    assert (name, chat_id) == ("send_text", 3)
    assert text.startswith('Job failed: {"id":"p1"')
    assert len(text) == len("Job failed: ") + MAX_FAILURE_CHARS
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_success_without_outputs_says_so() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle({"id": "p1", "status": "succeeded", "output": [None, {}]})

    assert notifier.calls == [("send_text", 3, NO_OUTPUT_TEXT)]
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_canceled_retires_record() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle({"id": "p1", "status": "canceled"})

    assert notifier.calls == [("send_text", 3, CANCELED_TEXT)]
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_unknown_status_keeps_job_pending() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle({"id": "p1", "status": "queued"})

    assert notifier.calls == []
    assert await store.get("p1") is not None
    assert store.deletes == []


@pytest.mark.anyio
async def test_outputs_are_routed_by_kind() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle(
        {
            "id": "p1",
            "status": "succeeded",
            "output": [
                "https://x/a.png",
                {"url": "https://x/b.mp3"},
                "https://x/file",
                "a plain answer",
            ],
        }
    )

    assert notifier.calls == [
        ("send_photo", 3, "https://x/a.png", "Here is your image"),
        ("send_document", 3, "https://x/b.mp3", "Here is your audio"),
        ("send_document", 3, "https://x/file", "Result"),
        ("send_text", 3, "a plain answer"),
    ]


@pytest.mark.anyio
async def test_media_without_embedded_caption_gets_follow_up_edit() -> None:
    engine, store, notifier, _ = _engine(notifier=_FakeNotifier(echo_captions=False))
    await _seed(
        store,
        JobRecord(job_id="p1", chat_id=3, caption="dog", last_update_at_ms=1_000_000),
    )

    await engine.handle(
        {"id": "p1", "status": "succeeded", "output": "https://x/out.webm"}
    )

    assert notifier.calls == [
        ("send_video", 3, "https://x/out.webm", "dog"),
        ("edit_caption", 3, 100, "dog"),
    ]


@pytest.mark.anyio
async def test_failed_output_delivery_does_not_block_the_rest() -> None:
    engine, store, notifier, _ = _engine()
    notifier.fail_on.add("send_video")
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )

    await engine.handle(
        {
            "id": "p1",
            "status": "succeeded",
            "output": ["https://x/a.mp4", "https://x/b.jpg"],
        }
    )

    assert [call[0] for call in notifier.calls] == ["send_video", "send_photo"]
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_progress_after_delivery_is_suppressed() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store,
        JobRecord(
            job_id="p1", chat_id=3, final_media_message_id=11, sent_outputs=1
        ),
    )

    await engine.handle({"id": "p1", "status": "processing", "progress": 0.9})
    await engine.handle(
        {"id": "p1", "status": "succeeded", "output": "https://x/a.mp4"}
    )

    assert notifier.calls == []
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_concurrent_duplicate_success_delivers_once() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )
    payload = {"id": "p1", "status": "succeeded", "output": "https://x/a.mp4"}

    async with anyio.create_task_group() as tg:
        tg.start_soon(engine.handle, payload)
        tg.start_soon(engine.handle, payload)

    assert [call[0] for call in notifier.calls] == ["send_video"]


@pytest.mark.anyio
async def test_different_jobs_are_handled_independently() -> None:
    engine, store, notifier, _ = _engine()
    for job_id, chat_id in [("a", 1), ("b", 2)]:
        await _seed(store, JobRecord(job_id=job_id, chat_id=chat_id))

    async with anyio.create_task_group() as tg:
        tg.start_soon(engine.handle, {"id": "a", "progress": 0.1})
        tg.start_soon(engine.handle, {"id": "b", "progress": 0.2})

    assert sorted(notifier.calls) == [
        ("send_text", 1, "Processing: 10%"),
        ("send_text", 2, "Processing: 20%"),
    ]


@pytest.mark.anyio
async def test_non_mapping_payload_is_ignored() -> None:
    engine, store, notifier, _ = _engine()

    await engine.handle(["not", "a", "dict"])  # type: ignore[arg-type]

    assert store.writes == []
    assert notifier.calls == []


@pytest.mark.anyio
async def test_engine_with_file_store(tmp_path: Path) -> None:
    store = JsonJobStore(tmp_path / "jobs.json")
    notifier = _FakeNotifier()
    engine = JobEngine(store=store, notifier=notifier, clock=_FakeClock())
    await store.put("p1", JobRecord(job_id="p1", chat_id=42, caption="cat"))

    await engine.handle({"id": "p1", "status": "processing", "progress": 0.25})
    reloaded = await JsonJobStore(tmp_path / "jobs.json").get("p1")

    assert reloaded is not None
    assert reloaded.progress_message_id == 100
    assert reloaded.last_percent == 25

    await engine.handle({"id": "p1", "status": "succeeded", "output": "hello"})

    assert notifier.calls[-1] == ("send_text", 42, "hello")
    assert await JsonJobStore(tmp_path / "jobs.json").get("p1") is None


def test_progress_surface_order() -> None:
    record = JobRecord(job_id="p", chat_id=1)
    assert progress_surface(record) is None

    record.progress_message_id = 4
    assert progress_surface(record) == ("text", 4)

    record.progress_is_media = True
    assert progress_surface(record) == ("caption", 4)

    record.final_media_message_id = 8
    assert progress_surface(record) == ("caption", 8)


@pytest.mark.anyio
async def test_track_skips_recovered_and_retired_jobs() -> None:
    engine, store, _, _ = _engine()

    assert await engine.track(JobRecord(job_id="new", chat_id=1, caption="a"))
    assert (await store.get("new")).caption == "a"

    assert not await engine.track(JobRecord(job_id="new", chat_id=1, caption="b"))
    assert (await store.get("new")).caption == "a"

    await engine.handle({"id": "new", "status": "canceled"})
    assert not await engine.track(JobRecord(job_id="new", chat_id=1))
    assert await store.get("new") is None


@pytest.mark.anyio
async def test_replayed_success_resumes_after_sent_outputs() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store,
        JobRecord(
            job_id="p1",
            chat_id=3,
            caption="cat",
            final_media_message_id=11,
            sent_outputs=1,
            last_update_at_ms=1_000_000,
        ),
    )

    await engine.handle(
        {
            "id": "p1",
            "status": "succeeded",
            "output": ["https://x/a.mp4", "https://x/b.png"],
        }
    )

    assert notifier.calls == [("send_photo", 3, "https://x/b.png", "cat")]
    assert await store.get("p1") is None


@pytest.mark.anyio
async def test_sent_outputs_are_persisted_one_by_one() -> None:
    engine, store, notifier, _ = _engine()
    await _seed(
        store, JobRecord(job_id="p1", chat_id=3, last_update_at_ms=1_000_000)
    )
    progress: list[int] = []
    original_put = store.put

    async def put(job_id, record):
        progress.append(record.sent_outputs)
        await original_put(job_id, record)

    store.put = put

    await engine.handle(
        {
            "id": "p1",
            "status": "succeeded",
            "output": ["https://x/a.mp4", "plain text"],
        }
    )

    assert progress == [1, 2]
    assert [call[0] for call in notifier.calls] == ["send_video", "send_text"]
