"""Unit tests for slot reservation, expiry and evaluations."""

from __future__ import annotations

import pytest

from task_escrow_service.records import EvaluationRecord, SubmissionStatus, TaskStatus
from task_escrow_service.services.submission_store import (
    ActiveReservationError,
    DuplicateEvaluationError,
)
from tests.helpers import add_task, add_user, now_iso


@pytest.mark.unit
class TestReserveTaskSlot:
    def test_reserves_oldest_funded_task(self, task_store, submission_store) -> None:
        newer = add_task(task_store, funded_at="2026-02-01T00:00:00.000000Z")
        older = add_task(task_store, funded_at="2026-01-01T00:00:00.000000Z")

        submission = submission_store.reserve_task_slot("w1", "s-1", now_iso())

        assert submission is not None
        assert submission.task_id == older.task_id
        assert submission.status == SubmissionStatus.PENDING
        task = task_store.get_task(older.task_id)
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_workers == ["w1"]
        assert task_store.get_task(newer.task_id).status == TaskStatus.FUNDED

    def test_offloaded_task_moves_to_processing(self, task_store, submission_store) -> None:
        task = add_task(task_store, processing_job_id="job-1", processing_status="submitted")

        submission_store.reserve_task_slot("w1", "s-1", now_iso())

        assert task_store.get_task(task.task_id).status == TaskStatus.WSA_PROCESSING

    def test_skips_own_tasks_and_unfunded_tasks(self, task_store, submission_store) -> None:
        add_task(task_store, creator_id="w1")
        add_task(task_store, status=TaskStatus.DRAFT)

        assert submission_store.reserve_task_slot("w1", "s-1", now_iso()) is None

    def test_worker_with_pending_reservation_is_refused(
        self, task_store, submission_store
    ) -> None:
        add_task(task_store, required_workers=1)
        add_task(task_store, required_workers=1)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())

        with pytest.raises(ActiveReservationError):
            submission_store.reserve_task_slot("w1", "s-2", now_iso())

    def test_full_task_is_not_offered(self, task_store, submission_store) -> None:
        add_task(task_store, required_workers=1)
        assert submission_store.reserve_task_slot("w1", "s-1", now_iso()) is not None
        assert submission_store.reserve_task_slot("w2", "s-2", now_iso()) is None

    def test_worker_never_gets_the_same_task_twice(self, task_store, submission_store) -> None:
        task = add_task(task_store, required_workers=3)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())
        submission_store.update_submission(
            "s-1", {"status": SubmissionStatus.PENDING_APPROVAL}, expected_status=None
        )

        assert submission_store.reserve_task_slot("w1", "s-2", now_iso()) is None
        assert len(submission_store.list_submissions(task_id=task.task_id)) == 1


@pytest.mark.unit
class TestExpiry:
    def test_release_reopens_slot_and_reverts_status(self, task_store, submission_store) -> None:
        task = add_task(task_store, required_workers=1)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())

        assert submission_store.release_reservation("s-1", now_iso()) is True

        refreshed = task_store.get_task(task.task_id)
        assert refreshed.status == TaskStatus.FUNDED
        assert refreshed.assigned_workers == []
        assert submission_store.get_submission("s-1").status == SubmissionStatus.EXPIRED
        # The slot is available again, to the same worker too
        assert submission_store.reserve_task_slot("w1", "s-2", now_iso()) is not None

    def test_release_only_applies_to_pending(self, task_store, submission_store) -> None:
        add_task(task_store, required_workers=1)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())
        submission_store.update_submission(
            "s-1", {"status": SubmissionStatus.PENDING_APPROVAL}, expected_status=None
        )

        assert submission_store.release_reservation("s-1", now_iso()) is False

    def test_expire_stale_pending_uses_creation_time(self, task_store, submission_store) -> None:
        task = add_task(task_store, required_workers=2)
        submission_store.reserve_task_slot("w-old", "s-old", "2026-01-01T00:00:00.000000Z")
        submission_store.reserve_task_slot("w-new", "s-new", "2026-01-01T00:10:00.000000Z")

        expired = submission_store.expire_stale_pending(
            "2026-01-01T00:05:00.000000Z", "2026-01-01T00:10:30.000000Z"
        )

        assert [s.submission_id for s in expired] == ["s-old"]
        assert expired[0].expired_at == "2026-01-01T00:10:30.000000Z"
        refreshed = task_store.get_task(task.task_id)
        # Another reservation is still live, so the task stays assigned
        assert refreshed.status == TaskStatus.ASSIGNED
        assert refreshed.assigned_workers == ["w-new"]


@pytest.mark.unit
class TestSubmissionUpdates:
    def test_payload_round_trips_as_json(self, task_store, submission_store) -> None:
        add_task(task_store)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())

        updated = submission_store.update_submission(
            "s-1",
            {"status": SubmissionStatus.PENDING_APPROVAL, "payload": {"labels": [1, 2]}},
            expected_status=SubmissionStatus.PENDING,
        )

        assert updated == 1
        assert submission_store.get_submission("s-1").payload == {"labels": [1, 2]}

    def test_lost_race_updates_nothing(self, task_store, submission_store) -> None:
        add_task(task_store)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())

        assert (
            submission_store.update_submission(
                "s-1",
                {"status": SubmissionStatus.APPROVED},
                expected_status=SubmissionStatus.PENDING_APPROVAL,
            )
            == 0
        )

    def test_list_by_worker_and_status(self, task_store, submission_store) -> None:
        add_task(task_store)
        add_task(task_store)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())
        submission_store.reserve_task_slot("w2", "s-2", now_iso())

        assert [s.submission_id for s in submission_store.list_submissions(worker_id="w1")] == [
            "s-1"
        ]
        assert (
            submission_store.list_submissions(worker_id="w1", status=SubmissionStatus.APPROVED)
            == []
        )


@pytest.mark.unit
class TestEvaluations:
    def _evaluation(self, evaluator_id: str, is_correct: bool) -> EvaluationRecord:
        return EvaluationRecord(
            evaluation_id=f"ev-{evaluator_id}",
            submission_id="s-1",
            evaluator_id=evaluator_id,
            is_correct=is_correct,
            created_at=now_iso(),
        )

    def test_duplicate_evaluation_rejected(self, task_store, submission_store) -> None:
        add_task(task_store)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())
        submission_store.insert_evaluation(self._evaluation("e1", True))

        with pytest.raises(DuplicateEvaluationError):
            submission_store.insert_evaluation(
                EvaluationRecord(
                    evaluation_id="ev-other",
                    submission_id="s-1",
                    evaluator_id="e1",
                    is_correct=False,
                    created_at=now_iso(),
                )
            )

    def test_votes_carry_reputation(self, task_store, submission_store, user_store) -> None:
        add_task(task_store)
        submission_store.reserve_task_slot("w1", "s-1", now_iso())
        add_user(user_store, "e1", score=150)
        submission_store.insert_evaluation(self._evaluation("e1", True))
        submission_store.insert_evaluation(self._evaluation("e-unknown", False))

        votes = submission_store.list_evaluation_votes("s-1")

        assert [(v.evaluator_id, v.is_correct, v.reputation_score) for v in votes] == [
            ("e1", True, 150),
            ("e-unknown", False, None),
        ]
