"""ProcessingSupervisor 테스트.

동시 처리 상한, 일시적/영구 실패 분류, 타임아웃, 수동 재시도,
리셋 시 취소와 늦게 도착한 결과 폐기, 진행률 단조 증가를 확인한다.
"""

import asyncio

import pytest

from core.exceptions import Conflict, InvalidState, PermanentError, StaleBatch, TransientError
from model.image import ErrorKind, ImageStatus
from service import processing_service
from service.workflow import Workflow

from conftest import make_settings


def _run(workflow, images, instructions="brighten"):
    async def scenario():
        batch_id = await workflow.submit(images, instructions)
        await workflow.supervisor.join(batch_id)
        return batch_id

    return asyncio.run(scenario())


class TestRoundTrip:
    def test_all_images_complete(self, workflow, fakes, raw):
        """업로드 → 처리 → completed. 처리 결과가 이력의 첫 항목이 된다."""
        batch_id = _run(workflow, raw("a.jpg", "b.jpg", "c.jpg"))

        batch = workflow.get_batch(batch_id)
        assert all(img.status == ImageStatus.COMPLETED for img in batch.images)
        a = batch.find("img-0")
        assert a.processed_ref == "orig/a.jpg>process1"
        assert a.attempts == 1
        assert a.retouch_history[0].kind == "process"
        assert a.retouch_history[0].processed_ref == a.processed_ref

        snapshot = workflow.progress(batch_id)
        assert snapshot.progress == 1.0
        assert snapshot.terminal

    def test_summary_generated_when_terminal(self, workflow, raw):
        batch_id = _run(workflow, raw("a.jpg", "b.jpg"))
        batch = workflow.get_batch(batch_id)
        assert batch.summary is not None
        assert "2장" in batch.summary
        assert not batch.summary_edited

    def test_pool_size_bounds_concurrency(self, tmp_path, fakes, raw):
        """동시에 처리 중인 이미지는 pool_size를 넘지 않는다."""
        fakes.processor.delay = 0.02
        workflow = Workflow(
            fakes.storage,
            fakes.processor,
            fakes.archive,
            fakes.dam,
            make_settings(tmp_path, PROCESSING_POOL_SIZE=2),
        )

        batch_id = _run(workflow, raw(*(f"{i}.jpg" for i in range(6))))

        assert fakes.processor.max_active == 2
        assert workflow.progress(batch_id).completed_count == 6


class TestFailures:
    def test_transient_failure_retried_until_success(self, workflow, fakes, raw):
        fakes.processor.failures["orig/a.jpg"] = [TransientError("busy"), TransientError("busy")]

        batch_id = _run(workflow, raw("a.jpg"))

        record = workflow.store.get_image("img-0", batch_id)
        assert record.status == ImageStatus.COMPLETED
        assert record.attempts == 3
        assert fakes.processor.call_count("process", "orig/a.jpg") == 3

    def test_transient_failure_exhausts_attempts(self, workflow, fakes, raw):
        """max_attempts번 모두 일시적 실패 → failed(transient), 시도 횟수 기록."""
        fakes.processor.failures["orig/a.jpg"] = [TransientError("busy")] * 5

        batch_id = _run(workflow, raw("a.jpg", "b.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.status == ImageStatus.FAILED
        assert a.error.kind == ErrorKind.TRANSIENT
        assert a.error.attempts == 3
        assert fakes.processor.call_count("process", "orig/a.jpg") == 3
        # 다른 이미지는 영향 없음
        assert workflow.store.get_image("img-1", batch_id).status == ImageStatus.COMPLETED

    def test_permanent_failure_not_retried(self, workflow, fakes, raw):
        fakes.processor.failures["orig/a.jpg"] = [PermanentError("content policy")]

        batch_id = _run(workflow, raw("a.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.status == ImageStatus.FAILED
        assert a.error.kind == ErrorKind.PERMANENT
        assert a.error.message == "content policy"
        assert fakes.processor.call_count("process", "orig/a.jpg") == 1

    def test_unclassified_exception_is_permanent(self, workflow, fakes, raw):
        fakes.processor.failures["orig/a.jpg"] = [RuntimeError("model crashed")]

        batch_id = _run(workflow, raw("a.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.error.kind == ErrorKind.PERMANENT

    def test_invalid_processor_result_fails_image(self, workflow, fakes, raw):
        """처리기가 ref 대신 None을 돌려주면 영구 실패. processing에 머물지 않는다."""
        fakes.processor.results["orig/a.jpg"] = None

        batch_id = _run(workflow, raw("a.jpg", "b.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.status == ImageStatus.FAILED
        assert a.error.kind == ErrorKind.PERMANENT
        assert a.processed_ref is None
        assert fakes.processor.call_count("process", "orig/a.jpg") == 1
        assert workflow.progress(batch_id).terminal
        assert workflow.get_batch(batch_id).summary is not None

    def test_crashed_task_marks_image_failed(self, workflow, raw, monkeypatch):
        """결과 반영 중 예외로 태스크가 죽어도 이미지는 failed로 기록되고 배치는 끝난다."""

        def broken_entry(**kwargs):
            raise ValueError("history entry rejected")

        monkeypatch.setattr(processing_service, "RetouchEntry", broken_entry)

        batch_id = _run(workflow, raw("a.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.status == ImageStatus.FAILED
        assert a.error.kind == ErrorKind.PERMANENT
        assert a.error.message == "history entry rejected"
        assert workflow.supervisor.in_flight_count == 0
        assert workflow.get_batch(batch_id).summary is not None

    def test_timeout_counts_as_transient(self, tmp_path, fakes, raw):
        """응답하지 않는 처리기는 타임아웃 후 일시적 실패로 재시도된다."""
        fakes.processor.hang.add("orig/a.jpg")
        workflow = Workflow(
            fakes.storage,
            fakes.processor,
            fakes.archive,
            fakes.dam,
            make_settings(tmp_path, PROCESS_TIMEOUT_SECONDS=0.05, MAX_ATTEMPTS=2),
        )

        batch_id = _run(workflow, raw("a.jpg"))

        a = workflow.store.get_image("img-0", batch_id)
        assert a.status == ImageStatus.FAILED
        assert a.error.kind == ErrorKind.TRANSIENT
        assert fakes.processor.call_count("process", "orig/a.jpg") == 2

    def test_backoff_is_exponential_and_capped(self, workflow):
        supervisor = workflow.supervisor
        assert supervisor.backoff(1) == pytest.approx(0.01)
        assert supervisor.backoff(2) == pytest.approx(0.02)
        assert supervisor.backoff(10) == pytest.approx(0.05)


class TestRequeue:
    def test_requeue_failed_image(self, workflow, fakes, raw):
        """실패한 이미지 하나만 다시 처리한다. 다른 이미지와 배치 정보는 그대로."""
        fakes.processor.failures["orig/a.jpg"] = [PermanentError("bad prompt")]

        async def scenario():
            batch_id = await workflow.submit(raw("a.jpg", "b.jpg"), "brighten")
            await workflow.supervisor.join(batch_id)
            before = workflow.get_batch(batch_id)

            requeued = workflow.retry(batch_id, "img-0")
            assert requeued.status == ImageStatus.QUEUED
            assert requeued.error is None
            await workflow.supervisor.join(batch_id)
            return before, workflow.get_batch(batch_id)

        before, after = asyncio.run(scenario())

        assert after.find("img-0").status == ImageStatus.COMPLETED
        assert after.find("img-1") == before.find("img-1")
        assert after.created_at == before.created_at
        assert after.instructions == before.instructions

    def test_requeue_requires_failed(self, workflow, raw):
        batch_id = _run(workflow, raw("a.jpg"))
        with pytest.raises(InvalidState):
            workflow.retry(batch_id, "img-0")

    def test_requeue_without_original_rejected(self, workflow, fakes, raw):
        """원본 저장에 실패한 이미지는 다시 업로드해야 한다."""
        fakes.storage.fail["a.jpg"] = PermanentError("broken upload")
        batch_id = _run(workflow, raw("a.jpg"))
        with pytest.raises(InvalidState):
            workflow.retry(batch_id, "img-0")

    def test_requeue_while_processing_conflicts(self, workflow, fakes, raw):
        async def scenario():
            fakes.processor.gate = asyncio.Event()
            batch_id = await workflow.submit(raw("a.jpg"), "brighten")
            await asyncio.sleep(0.01)
            assert workflow.store.get_image("img-0").status == ImageStatus.PROCESSING
            try:
                with pytest.raises(Conflict):
                    workflow.retry(batch_id, "img-0")
            finally:
                fakes.processor.gate.set()
            await workflow.supervisor.join(batch_id)

        asyncio.run(scenario())


class TestReset:
    def test_reset_cancels_in_flight_work(self, workflow, fakes, raw):
        """리셋하면 진행 중 태스크가 취소되고 새 배치에는 아무것도 쓰이지 않는다."""

        async def scenario():
            fakes.processor.gate = asyncio.Event()
            old_id = await workflow.submit(raw("a.jpg", "b.jpg"), "brighten")
            await asyncio.sleep(0.01)
            assert workflow.supervisor.in_flight_count == 2

            assert workflow.reset() == old_id
            assert workflow.supervisor.in_flight_count == 0

            fakes.processor.gate = None
            new_id = await workflow.submit(raw("c.jpg"), "grayscale")
            await workflow.supervisor.join(new_id)
            return old_id, new_id

        old_id, new_id = asyncio.run(scenario())

        batch = workflow.current_batch()
        assert batch.id == new_id != old_id
        assert [img.original_ref for img in batch.images] == ["orig/c.jpg"]
        assert batch.find("img-0").processed_ref == "orig/c.jpg>process1"

    def test_late_result_for_replaced_batch_is_discarded(self, workflow, raw):
        """리셋 이전 배치 태그로 들어온 결과는 StaleBatch로 거부된다."""

        async def scenario():
            old_id = await workflow.submit(raw("a.jpg"), "brighten")
            await workflow.supervisor.join(old_id)
            new_id = await workflow.submit(raw("b.jpg"), "brighten")
            await workflow.supervisor.join(new_id)
            return old_id

        old_id = asyncio.run(scenario())

        before = workflow.current_batch()
        with pytest.raises(StaleBatch):
            workflow.store.update_image(
                "img-0", {"processed_ref": "late-result"}, batch_id=old_id
            )
        assert workflow.current_batch() == before


class TestProgress:
    def test_progress_is_monotonic(self, workflow, fakes, raw):
        """자동 진행 중에는 진행률이 줄어들지 않는다 (재시도 포함)."""
        fakes.processor.failures["orig/b.jpg"] = [TransientError("busy")]
        fakes.processor.failures["orig/c.jpg"] = [PermanentError("rejected")]
        observed = []
        workflow.store.subscribe(
            lambda e: observed.append(workflow.store.progress()) if e.kind == "image_updated" else None
        )

        _run(workflow, raw("a.jpg", "b.jpg", "c.jpg", "d.jpg"))

        assert observed == sorted(observed)
        assert observed[-1] == 1.0

    def test_snapshots_end_at_terminal(self, workflow, raw):
        async def scenario():
            batch_id = await workflow.submit(raw("a.jpg", "b.jpg"), "brighten")
            return [s async for s in workflow.snapshots(batch_id)]

        snapshots = asyncio.run(scenario())

        assert snapshots[-1].terminal
        assert snapshots[-1].percent == 100.0
        assert all(not s.terminal for s in snapshots[:-1])
