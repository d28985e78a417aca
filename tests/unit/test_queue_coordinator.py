import pytest

from arborkb.dao import kb_dao, queue_dao
from arborkb.database import SessionLocal
from arborkb.errors import NotFoundError, QueueStateError
from arborkb.models.audit_log import AuditLog
from arborkb.models.kb_chunk import KbChunk
from arborkb.models.page_suggestion import PageSuggestion
from arborkb.models.processing_queue import ProcessingStatus
from arborkb.services import queue_coordinator
from arborkb.services.events import QueueWake
from arborkb.services.queue_coordinator import UploadedImage


def _upload(db, store, bus, names=("p1.png", "p2.png", "p3.png"), source_id="src-1", batch_size=10):
    uploads = [UploadedImage(name, f"bytes of {name}".encode(), "image/png") for name in names]
    return queue_coordinator.register_upload(db, store, source_id, uploads, batch_size, bus=bus)


def _pages_by_number(db, batch_id):
    return {p.page_number: p for p in queue_dao.get_pages(db, batch_id)}


def _assert_aggregates_match_pages(db, batch_id):
    batch = queue_dao.get_batch(db, batch_id)
    completed = sum(1 for p in queue_dao.get_pages(db, batch_id) if p.status == ProcessingStatus.COMPLETED)
    errors = sum(1 for p in queue_dao.get_pages(db, batch_id) if p.status == ProcessingStatus.ERROR)
    assert batch.processed_pages == completed
    assert (batch.status == ProcessingStatus.COMPLETED) == (completed == batch.total_pages and errors == 0)


def _wakes(bus):
    seen = []
    bus.subscribe(lambda event: seen.append(event) if isinstance(event, QueueWake) else None)
    return seen


def test_create_batch_registers_every_page_as_pending(db, bus) -> None:
    batch = queue_coordinator.create_batch(db, "src-9", "Manual batch", 4, bus=bus)

    pages = queue_dao.get_pages(db, batch.id)
    assert [p.page_number for p in pages] == [1, 2, 3, 4]
    assert {p.status for p in pages} == {ProcessingStatus.PENDING}
    assert batch.status == ProcessingStatus.PENDING
    assert db.query(AuditLog).filter_by(event_type="BATCH_CREATED").count() == 1


def test_create_batch_rejects_empty_batches(db, bus) -> None:
    with pytest.raises(ValueError):
        queue_coordinator.create_batch(db, "src-9", "Nothing", 0, bus=bus)
    assert queue_dao.list_batches(db) == []


def test_upload_splits_files_into_named_batches(db, store, bus) -> None:
    batches = _upload(db, store, bus, names=("a.png", "b.png", "c.png", "d.png", "e.png"), batch_size=2)

    assert [b.batch_name for b in batches] == ["Batch 1 of 3", "Batch 2 of 3", "Batch 3 of 3"]
    assert [b.total_pages for b in batches] == [2, 2, 1]
    assert [b.page_offset for b in batches] == [0, 2, 4]
    image = kb_dao.get_image(db, "src-1", 5)
    assert image.uri == "src-1/batch-3/page-5-e.png"
    assert image.meta["batch"] == 3
    assert (store.root / "src-1" / "batch-3" / "page-5-e.png").read_bytes() == b"bytes of e.png"


def test_happy_path_completes_the_batch(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus)

    results = queue_coordinator.process_batch(db, batch.id, stages, bus)

    assert [r["status"] for r in results] == ["completed"] * 3
    batch = queue_dao.get_batch(db, batch.id)
    assert batch.status == ProcessingStatus.COMPLETED
    assert batch.processed_pages == 3
    assert batch.progress_percentage == 100
    assert batch.completed_at is not None
    assert batch.error_message is None
    assert db.query(KbChunk).filter_by(source_id="src-1").count() == 3
    assert all(s.confidence_score >= 0.5 for s in db.query(PageSuggestion).all())
    assert db.query(PageSuggestion).count() == 6
    _assert_aggregates_match_pages(db, batch.id)


def test_phase_timestamps_are_monotonic(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus)
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    for page in queue_dao.get_pages(db, batch.id):
        assert page.phase1_completed_at <= page.phase2_completed_at <= page.phase3_completed_at


def test_single_page_failure_and_recovery(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png", "missing.png", "p3.png"))

    queue_coordinator.process_batch(db, batch.id, stages, bus)

    pages = _pages_by_number(db, batch.id)
    assert pages[1].status == ProcessingStatus.COMPLETED
    assert pages[3].status == ProcessingStatus.COMPLETED
    assert pages[2].status == ProcessingStatus.ERROR
    assert pages[2].error_message.startswith("[extraction] ResourceUnreachable")
    batch = queue_dao.get_batch(db, batch.id)
    assert batch.status == ProcessingStatus.ERROR
    assert batch.processed_pages == 2
    assert batch.error_message == "1 pages failed to process"
    _assert_aggregates_match_pages(db, batch.id)

    image, overwritten = queue_coordinator.upload_page_image(
        db, store, "src-1", 2, UploadedImage("p2.png", b"a readable scan", "image/png")
    )
    assert overwritten
    assert not (store.root / "src-1" / "batch-1" / "page-2-missing.png").exists()

    assert queue_coordinator.retry_page(db, pages[2].id, bus=bus)
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    batch = queue_dao.get_batch(db, batch.id)
    assert batch.status == ProcessingStatus.COMPLETED
    assert batch.processed_pages == 3
    assert db.query(KbChunk).filter_by(source_id="src-1", page=2).count() == 1
    _assert_aggregates_match_pages(db, batch.id)


def test_retrying_a_pending_page_is_a_no_op(db, bus) -> None:
    batch = queue_coordinator.create_batch(db, "src-9", "Manual batch", 2, bus=bus)
    page = queue_dao.get_pages(db, batch.id)[0]
    wakes = _wakes(bus)

    assert queue_coordinator.retry_page(db, page.id, bus=bus) is False
    assert queue_coordinator.retry_page(db, page.id, bus=bus) is False

    assert wakes == []
    assert queue_dao.get_page(db, page.id).status == ProcessingStatus.PENDING


def test_retry_is_idempotent(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("missing.png",))
    queue_coordinator.process_batch(db, batch.id, stages, bus)
    page = queue_dao.get_pages(db, batch.id)[0]
    wakes = _wakes(bus)

    assert queue_coordinator.retry_page(db, page.id, bus=bus) is True
    assert queue_coordinator.retry_page(db, page.id, bus=bus) is False

    page = queue_dao.get_page(db, page.id)
    assert page.status == ProcessingStatus.PENDING
    assert page.error_message is None
    assert page.processed_at is None
    assert len(wakes) == 1
    assert db.query(AuditLog).filter_by(event_type="PAGE_RETRIED").count() == 1


def test_retry_refuses_completed_pages(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png",))
    queue_coordinator.process_batch(db, batch.id, stages, bus)
    page = queue_dao.get_pages(db, batch.id)[0]

    with pytest.raises(QueueStateError):
        queue_coordinator.retry_page(db, page.id, bus=bus)
    with pytest.raises(NotFoundError):
        queue_coordinator.retry_page(db, 99999, bus=bus)


def test_retry_all_errors_requeues_only_failed_pages(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("missing-1.png", "p2.png", "missing-3.png"))
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    assert queue_coordinator.retry_all_errors(db, batch.id, bus=bus) == 2
    assert queue_coordinator.retry_all_errors(db, batch.id, bus=bus) == 0

    pages = _pages_by_number(db, batch.id)
    assert pages[1].status == ProcessingStatus.PENDING
    assert pages[2].status == ProcessingStatus.COMPLETED
    assert pages[3].status == ProcessingStatus.PENDING
    assert queue_dao.get_batch(db, batch.id).status == ProcessingStatus.PROCESSING


def test_retry_all_errors_leaves_a_page_already_picked_up_alone(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("missing-1.png", "p2.png", "missing-3.png"))
    queue_coordinator.process_batch(db, batch.id, stages, bus)
    first = _pages_by_number(db, batch.id)[1]

    assert queue_coordinator.retry_page(db, first.id, bus=bus)
    assert queue_dao.claim_page(db, first.id)
    db.commit()
    attempt = queue_dao.get_page(db, first.id).attempt

    assert queue_coordinator.retry_all_errors(db, batch.id, bus=bus) == 1

    first = queue_dao.get_page(db, first.id)
    assert first.status == ProcessingStatus.PROCESSING
    assert first.attempt == attempt
    assert _pages_by_number(db, batch.id)[3].status == ProcessingStatus.PENDING


def test_reprocess_reruns_every_stage_without_duplicating(db, store, bus, stages, recognizer) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png",))
    queue_coordinator.process_batch(db, batch.id, stages, bus)
    page = queue_dao.get_pages(db, batch.id)[0]
    chunk_id = kb_dao.get_chunk_for_slot(db, "src-1", 1).id

    assert queue_coordinator.reprocess_page(db, page.id, bus=bus)
    page = queue_dao.get_page(db, page.id)
    assert page.phase1_completed_at is None
    assert page.phase3_completed_at is None

    queue_coordinator.process_batch(db, batch.id, stages, bus)

    assert len(recognizer.calls) == 2
    assert kb_dao.get_chunk_for_slot(db, "src-1", 1).id == chunk_id
    assert db.query(PageSuggestion).count() == 2
    assert queue_dao.get_page(db, page.id).attempt == 2


def test_retried_page_resumes_at_its_first_missing_phase(db, store, bus, stages, recognizer, translator) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png",))
    page = queue_dao.get_pages(db, batch.id)[0]
    stages.text.run(db, "src-1", 1, kb_dao.get_image(db, "src-1", 1).uri)

    queue_coordinator.process_batch(db, batch.id, stages, bus)

    assert len(recognizer.calls) == 1
    assert len(translator.calls) == 1
    assert queue_dao.get_page(db, page.id).status == ProcessingStatus.COMPLETED


def test_restart_entire_batch_wipes_results(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png", "p2.png", "missing.png"))
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    with pytest.raises(ValueError):
        queue_coordinator.restart_entire_batch(db, batch.id, confirm=False, bus=bus)

    summary = queue_coordinator.restart_entire_batch(db, batch.id, confirm=True, bus=bus)

    pages = queue_dao.get_pages(db, batch.id)
    assert len(pages) == 3
    assert {p.status for p in pages} == {ProcessingStatus.PENDING}
    assert all(p.error_message is None and p.phase1_completed_at is None for p in pages)
    batch = queue_dao.get_batch(db, batch.id)
    assert batch.status == ProcessingStatus.PENDING
    assert batch.processed_pages == 0
    assert batch.error_message is None
    assert summary == {"pages_reset": 3, "chunks_deleted": 2, "suggestions_deleted": 4}
    assert db.query(KbChunk).count() == 0
    assert db.query(PageSuggestion).count() == 0
    assert kb_dao.get_image(db, "src-1", 1) is not None


def test_force_restart_requeues_stalled_pages(db, bus) -> None:
    batch = queue_coordinator.create_batch(db, "src-9", "Manual batch", 3, bus=bus)
    pages = queue_dao.get_pages(db, batch.id)

    with pytest.raises(QueueStateError):
        queue_coordinator.force_restart(db, batch.id, bus=bus)

    # a worker claimed page 1 and died
    assert queue_dao.claim_page(db, pages[0].id)
    db.commit()
    queue_coordinator.recompute_batch(db, batch.id)
    assert queue_dao.get_batch(db, batch.id).status == ProcessingStatus.PROCESSING

    assert queue_coordinator.force_restart(db, batch.id, bus=bus) == 1
    assert {p.status for p in queue_dao.get_pages(db, batch.id)} == {ProcessingStatus.PENDING}


def test_result_of_a_paused_page_is_discarded(db, store, bus, stages, recognizer) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png",))
    page_id = queue_dao.get_pages(db, batch.id)[0].id

    class PausingRecognizer:
        calls = []

        def recognize(self, image_url: str) -> str:
            self.calls.append(image_url)
            operator = SessionLocal()
            try:
                queue_coordinator.pause_page(operator, page_id, actor="operator", bus=bus)
            finally:
                operator.close()
            return recognizer.default

    stages.text.recognizer = PausingRecognizer()

    result = queue_coordinator.process_next_page(db, batch.id, stages, bus)

    assert result["status"] == "discarded"
    page = queue_dao.get_page(db, page_id)
    assert page.status == ProcessingStatus.PAUSED
    assert page.phase1_completed_at is None
    assert db.query(KbChunk).count() == 0
    assert queue_dao.get_batch(db, batch.id).status == ProcessingStatus.PAUSED

    stages.text.recognizer = recognizer
    assert queue_coordinator.resume_page(db, page_id, bus=bus)
    queue_coordinator.process_batch(db, batch.id, stages, bus)
    assert queue_dao.get_page(db, page_id).status == ProcessingStatus.COMPLETED


def test_stats_are_counted_from_pages(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png", "missing.png"))
    queue_coordinator.create_batch(db, "src-9", "Manual batch", 2, bus=bus)
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    per_batch = queue_coordinator.get_stats(db, batch.id)
    overall = queue_coordinator.get_stats(db)

    assert per_batch["completed"] == 1
    assert per_batch["error"] == 1
    assert per_batch["total"] == 2
    assert overall["pending"] == 2
    assert overall["total"] == 4
    assert overall["batches"]["error"] == 1
    assert overall["batches"]["pending"] == 1
    assert overall["batches"]["completed"] == 0


def test_recover_inflight_returns_claimed_pages_to_pending(db, bus) -> None:
    batch = queue_coordinator.create_batch(db, "src-9", "Manual batch", 2, bus=bus)
    pages = queue_dao.get_pages(db, batch.id)
    queue_dao.claim_page(db, pages[0].id)
    db.commit()

    assert queue_coordinator.recover_inflight(db) == 1
    assert {p.status for p in queue_dao.get_pages(db, batch.id)} == {ProcessingStatus.PENDING}
    assert queue_coordinator.resume_pending_batches(db, bus) == [batch.id]


def test_delete_batch_purges_images_and_results(db, store, bus, stages) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png", "p2.png"))
    queue_coordinator.process_batch(db, batch.id, stages, bus)

    batch_id = batch.id
    summary = queue_coordinator.delete_batch(db, batch_id, store)

    assert summary["pages_deleted"] == 2
    assert summary["images_deleted"] == 2
    assert summary["blobs_failed"] == []
    assert queue_dao.get_batch(db, batch_id) is None
    assert kb_dao.list_images(db, "src-1") == []
    assert db.query(KbChunk).count() == 0
    assert not (store.root / "src-1" / "batch-1" / "page-1-p1.png").exists()


def test_deleted_rows_leave_the_session(db, store, bus) -> None:
    (batch,) = _upload(db, store, bus, names=("p1.png", "p2.png"))
    pages = queue_dao.get_pages(db, batch.id)

    queue_coordinator.delete_batch(db, batch.id, store, purge_images=False)

    assert batch not in db
    assert all(page not in db for page in pages)
    replacement = queue_coordinator.create_batch(db, "src-2", "Manual batch", 1, bus=bus)
    assert queue_dao.get_batch(db, replacement.id) is replacement


def test_upload_into_a_leftover_slot_removes_the_replaced_image(db, store, bus) -> None:
    _upload(db, store, bus, names=("a.png",), source_id="book")
    (second,) = _upload(db, store, bus, names=("b.png",), source_id="book")
    queue_coordinator.delete_batch(db, second.id, store, purge_images=False)
    leftover = store.root / "book" / "batch-2" / "page-2-b.png"
    assert leftover.exists()

    (third,) = _upload(db, store, bus, names=("c.png",), source_id="book")

    assert third.page_offset == 1
    assert kb_dao.get_image(db, "book", 2).uri == "book/batch-2/page-2-c.png"
    assert (store.root / "book" / "batch-2" / "page-2-c.png").exists()
    assert not leftover.exists()
    entry = db.query(AuditLog).filter_by(event_type="BATCH_CREATED", entity_id=str(third.id)).one()
    assert entry.detail["overwritten_slots"] == [2]
