"""Unit tests for SubmissionReview and the settlement cascade it drives."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from task_escrow_service.core.exceptions import (
    BlockchainError,
    ForbiddenError,
    InvalidOperationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from task_escrow_service.records import SubmissionStatus, TaskCategory, TaskStatus
from task_escrow_service.services.reputation import ReputationAdjuster
from task_escrow_service.services.settlement import SettlementCoordinator
from task_escrow_service.services.submission_review import SubmissionReview
from tests.helpers import CENT, add_task, add_user, now_iso


@pytest.fixture
def review(task_store, submission_store, user_store, gateway, policy) -> SubmissionReview:
    settlement = SettlementCoordinator(
        gateway=gateway, tasks=task_store, submissions=submission_store, users=user_store
    )
    return SubmissionReview(
        tasks=task_store,
        submissions=submission_store,
        settlement=settlement,
        reputation=ReputationAdjuster(users=user_store, policy=policy.reputation),
        policy=policy,
    )


def _reserve(submission_store, user_store, worker_id: str, **user_kwargs) -> str:
    add_user(user_store, worker_id, **user_kwargs)
    submission = submission_store.reserve_task_slot(worker_id, f"s-{worker_id}", now_iso())
    assert submission is not None
    return submission.submission_id


def _submitted(review_status: SubmissionStatus, submission_store, submission_id: str) -> None:
    submission_store.update_submission(
        submission_id,
        {"status": review_status, "payload": {"boxes": 3}, "submitted_at": now_iso()},
        expected_status=SubmissionStatus.PENDING,
    )


# ----------------------------------------------------------------------
# submit_work
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_submit_routes_to_approval_gate(review, task_store, submission_store, user_store):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")

    submission = await review.submit_work(submission_id, "u-w1", {"boxes": 3})

    assert submission.status == SubmissionStatus.PENDING_APPROVAL
    assert submission.payload == {"boxes": 3}
    assert submission.submitted_at is not None


@pytest.mark.unit
async def test_submit_routes_to_consensus_gate(review, task_store, submission_store, user_store):
    add_task(task_store, category=TaskCategory.AI_EVALUATION)
    submission_id = _reserve(submission_store, user_store, "u-w1")

    submission = await review.submit_work(submission_id, "u-w1", {"verdict": "ok"})

    assert submission.status == SubmissionStatus.PENDING_CONSENSUS


@pytest.mark.unit
async def test_submit_rejects_other_worker_and_bad_payload(
    review, task_store, submission_store, user_store
):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")

    with pytest.raises(NotFoundError):
        await review.submit_work(submission_id, "u-w2", {"boxes": 3})
    with pytest.raises(ValidationError):
        await review.submit_work(submission_id, "u-w1", ["not", "an", "object"])

    await review.submit_work(submission_id, "u-w1", {"boxes": 3})
    with pytest.raises(InvalidStateError):
        await review.submit_work(submission_id, "u-w1", {"boxes": 4})


@pytest.mark.unit
async def test_compute_share_auto_completes_and_settles(
    review, task_store, submission_store, user_store, gateway
):
    task = add_task(task_store, category=TaskCategory.COMPUTE_SHARE, required_workers=1)
    submission_id = _reserve(submission_store, user_store, "u-w1")

    submission = await review.submit_work(submission_id, "u-w1", {"cycles": 10})

    assert submission.status == SubmissionStatus.COMPLETED
    assert submission.approved_at is not None
    gateway.release_batch_payouts.assert_awaited_once()
    gateway.complete_task.assert_awaited_once()
    assert gateway.complete_task.await_args.kwargs["refund_amount"] == 0
    assert user_store.get_user("u-w1").reputation_score == 110
    stored = task_store.get_task(task.task_id)
    assert stored.status == TaskStatus.COMPLETED


@pytest.mark.unit
async def test_compute_share_payout_failure_reverts(
    review, task_store, submission_store, user_store, gateway
):
    add_task(task_store, category=TaskCategory.COMPUTE_SHARE, required_workers=1)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    gateway.release_batch_payouts.side_effect = BlockchainError("TRANSACTION_REVERTED", "no")

    with pytest.raises(BlockchainError):
        await review.submit_work(submission_id, "u-w1", {"cycles": 10})

    submission = submission_store.get_submission(submission_id)
    assert submission.status == SubmissionStatus.PENDING
    assert submission.payload is None
    assert user_store.get_user("u-w1").reputation_score == 100


# ----------------------------------------------------------------------
# approve / reject
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_both_approved_completes_task_once(
    review, task_store, submission_store, user_store, gateway
):
    task = add_task(task_store)
    first = _reserve(submission_store, user_store, "u-w1")
    second = _reserve(submission_store, user_store, "u-w2")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, first)
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, second)

    approved = await review.approve(first, "u-creator")
    assert approved.status == SubmissionStatus.APPROVED
    gateway.complete_task.assert_not_awaited()

    await review.approve(second, "u-creator")

    gateway.complete_task.assert_awaited_once()
    assert gateway.complete_task.await_args.kwargs["refund_amount"] == 0
    assert gateway.release_batch_payouts.await_count == 2
    payout = gateway.release_batch_payouts.await_args_list[0].args[1][0]
    assert payout.address == "0xu-w1"
    assert payout.amount == CENT
    stored = task_store.get_task(task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.completed_at is not None


@pytest.mark.unit
async def test_both_rejected_refunds_task_once(
    review, task_store, submission_store, user_store, gateway
):
    task = add_task(task_store)
    first = _reserve(submission_store, user_store, "u-w1")
    second = _reserve(submission_store, user_store, "u-w2")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, first)
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, second)

    await review.reject(first, "u-creator")
    rejected = await review.reject(second, "u-creator")

    assert rejected.status == SubmissionStatus.REJECTED
    gateway.cancel_and_refund.assert_awaited_once()
    assert gateway.cancel_and_refund.await_args.kwargs["refund_amount"] == task.total_cost
    gateway.release_batch_payouts.assert_not_awaited()
    assert user_store.get_user("u-w1").reputation_score == 95
    assert task_store.get_task(task.task_id).status == TaskStatus.CANCELLED


@pytest.mark.unit
async def test_mixed_outcome_refunds_unpaid_slot(
    review, task_store, submission_store, user_store, gateway
):
    add_task(task_store)
    first = _reserve(submission_store, user_store, "u-w1")
    second = _reserve(submission_store, user_store, "u-w2")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, first)
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, second)

    await review.approve(first, "u-creator")
    await review.reject(second, "u-creator")

    gateway.complete_task.assert_awaited_once()
    assert gateway.complete_task.await_args.kwargs["refund_amount"] == CENT


@pytest.mark.unit
async def test_unconfirmed_payout_keeps_task_open(
    review, task_store, submission_store, user_store, gateway
):
    task = add_task(task_store)
    first = _reserve(submission_store, user_store, "u-w1")
    second = _reserve(submission_store, user_store, "u-w2")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, first)
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, second)
    receipt = gateway.release_batch_payouts.return_value
    first_payout_sent = asyncio.Event()
    first_payout_confirmed = asyncio.Event()

    async def _release(task_id, payouts):
        if payouts[0].worker_id == "u-w1":
            first_payout_sent.set()
            await first_payout_confirmed.wait()
            raise BlockchainError("TRANSACTION_REVERTED", "Transaction reverted")
        return receipt

    gateway.release_batch_payouts.side_effect = _release

    first_approval = asyncio.create_task(review.approve(first, "u-creator"))
    await first_payout_sent.wait()
    assert submission_store.get_submission(first).status == SubmissionStatus.PAYING

    second_approved = await review.approve(second, "u-creator")
    assert second_approved.status == SubmissionStatus.APPROVED
    gateway.complete_task.assert_not_awaited()

    first_payout_confirmed.set()
    results = await asyncio.gather(first_approval, return_exceptions=True)
    assert isinstance(results[0], BlockchainError)

    gateway.complete_task.assert_not_awaited()
    stored = task_store.get_task(task.task_id)
    assert stored.status != TaskStatus.COMPLETED
    assert stored.settlement is None
    reverted = submission_store.get_submission(first)
    assert reverted.status == SubmissionStatus.PENDING_APPROVAL
    assert reverted.approved_at is None
    assert user_store.get_user("u-w1").reputation_score == 100

    # A retried approval pays the worker and only then closes the task
    gateway.release_batch_payouts.side_effect = None
    await review.approve(first, "u-creator")

    gateway.complete_task.assert_awaited_once()
    assert gateway.complete_task.await_args.kwargs["refund_amount"] == 0
    assert task_store.get_task(task.task_id).status == TaskStatus.COMPLETED


@pytest.mark.unit
async def test_approve_requires_creator_and_status(
    review, task_store, submission_store, user_store
):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")

    with pytest.raises(InvalidStateError):
        await review.approve(submission_id, "u-creator")

    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)
    with pytest.raises(ForbiddenError):
        await review.approve(submission_id, "u-w1")
    with pytest.raises(ForbiddenError):
        await review.reject(submission_id, "u-someone")
    with pytest.raises(NotFoundError):
        await review.approve("s-missing", "u-creator")


@pytest.mark.unit
async def test_repeat_decision_on_approved_submission(
    review, task_store, submission_store, user_store, gateway
):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)
    await review.approve(submission_id, "u-creator")

    with pytest.raises(InvalidStateError) as exc_info:
        await review.approve(submission_id, "u-creator")
    assert exc_info.value.error == "INVALID_STATUS"
    with pytest.raises(InvalidStateError):
        await review.reject(submission_id, "u-creator")

    assert gateway.release_batch_payouts.await_count == 1
    assert user_store.get_user("u-w1").reputation_score == 110
    assert submission_store.get_submission(submission_id).status == SubmissionStatus.APPROVED


@pytest.mark.unit
async def test_repeat_decision_on_rejected_submission(
    review, task_store, submission_store, user_store, gateway
):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)
    await review.reject(submission_id, "u-creator")

    with pytest.raises(InvalidStateError):
        await review.reject(submission_id, "u-creator")
    with pytest.raises(InvalidStateError):
        await review.approve(submission_id, "u-creator")

    gateway.release_batch_payouts.assert_not_awaited()
    assert user_store.get_user("u-w1").reputation_score == 95
    assert submission_store.get_submission(submission_id).status == SubmissionStatus.REJECTED


@pytest.mark.unit
async def test_approve_without_wallet_reverts(
    review, database, task_store, submission_store, user_store, gateway
):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)
    # Wallet addresses are only ever replaced by non-null values, so write directly
    database.execute_write(
        "UPDATE users SET wallet_address = NULL WHERE user_id = ?", ("u-w1",)
    )

    with pytest.raises(ValidationError) as exc_info:
        await review.approve(submission_id, "u-creator")

    assert exc_info.value.error == "WALLET_NOT_FOUND"
    submission = submission_store.get_submission(submission_id)
    assert submission.status == SubmissionStatus.PENDING_APPROVAL
    assert submission.approved_at is None
    gateway.release_batch_payouts.assert_not_awaited()


@pytest.mark.unit
async def test_approve_lost_race(review, task_store, submission_store, user_store):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)
    original_update = submission_store.update_submission

    def _race(submission_id_arg, updates, *, expected_status):
        original_update(
            submission_id_arg,
            {"status": SubmissionStatus.REJECTED},
            expected_status=SubmissionStatus.PENDING_APPROVAL,
        )
        return original_update(submission_id_arg, updates, expected_status=expected_status)

    submission_store.update_submission = MagicMock(side_effect=_race)

    with pytest.raises(InvalidStateError) as exc_info:
        await review.approve(submission_id, "u-creator")

    assert exc_info.value.message == "Submission status changed concurrently"


# ----------------------------------------------------------------------
# evaluate
# ----------------------------------------------------------------------


def _consensus_submission(task_store, submission_store, user_store, required_workers=1) -> str:
    add_task(task_store, category=TaskCategory.AI_EVALUATION, required_workers=required_workers)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_CONSENSUS, submission_store, submission_id)
    return submission_id


@pytest.mark.unit
async def test_evaluate_below_minimum(review, task_store, submission_store, user_store, gateway):
    submission_id = _consensus_submission(task_store, submission_store, user_store)

    outcome = await review.evaluate(submission_id, "u-e1", True)

    assert outcome.submission is None
    assert outcome.consensus is None
    assert outcome.to_dict()["evaluation"]["evaluator_id"] == "u-e1"
    gateway.release_batch_payouts.assert_not_awaited()


@pytest.mark.unit
async def test_evaluate_consensus_approves(
    review, task_store, submission_store, user_store, gateway
):
    submission_id = _consensus_submission(task_store, submission_store, user_store)
    add_user(user_store, "u-e1")
    add_user(user_store, "u-e2")
    add_user(user_store, "u-e3", score=10)

    await review.evaluate(submission_id, "u-e1", True)
    await review.evaluate(submission_id, "u-e2", True)
    outcome = await review.evaluate(submission_id, "u-e3", False)

    assert outcome.consensus is not None
    assert outcome.consensus.approved is True
    assert outcome.submission.status == SubmissionStatus.APPROVED
    assert outcome.submission.evaluated_at is not None
    body = outcome.to_dict()
    assert body["consensus"]["correct_weight"] == 200
    assert body["consensus"]["total_weight"] == 210
    gateway.release_batch_payouts.assert_awaited_once()
    gateway.complete_task.assert_awaited_once()


@pytest.mark.unit
async def test_evaluate_reputation_weights_decide(
    review, task_store, submission_store, user_store, gateway
):
    submission_id = _consensus_submission(task_store, submission_store, user_store)
    add_user(user_store, "u-e1", score=200)
    add_user(user_store, "u-e2", score=10)
    add_user(user_store, "u-e3", score=10)

    await review.evaluate(submission_id, "u-e1", False)
    await review.evaluate(submission_id, "u-e2", True)
    outcome = await review.evaluate(submission_id, "u-e3", True)

    assert outcome.consensus.approved is False
    assert outcome.submission.status == SubmissionStatus.REJECTED
    assert user_store.get_user("u-w1").reputation_score == 95
    gateway.cancel_and_refund.assert_awaited_once()


@pytest.mark.unit
async def test_evaluate_guards(review, task_store, submission_store, user_store):
    submission_id = _consensus_submission(task_store, submission_store, user_store)

    with pytest.raises(ValidationError):
        await review.evaluate(submission_id, "u-e1", "yes")
    with pytest.raises(InvalidOperationError) as exc_info:
        await review.evaluate(submission_id, "u-w1", True)
    assert exc_info.value.error == "SELF_EVALUATION"

    await review.evaluate(submission_id, "u-e1", True)
    with pytest.raises(InvalidStateError) as exc_info:
        await review.evaluate(submission_id, "u-e1", False)
    assert exc_info.value.error == "ALREADY_EVALUATED"


@pytest.mark.unit
async def test_evaluate_wrong_category(review, task_store, submission_store, user_store):
    add_task(task_store)
    submission_id = _reserve(submission_store, user_store, "u-w1")
    _submitted(SubmissionStatus.PENDING_APPROVAL, submission_store, submission_id)

    with pytest.raises(InvalidStateError) as exc_info:
        await review.evaluate(submission_id, "u-e1", True)

    assert exc_info.value.error == "INVALID_CATEGORY"


@pytest.mark.unit
async def test_evaluate_after_decision(review, task_store, submission_store, user_store):
    submission_id = _consensus_submission(task_store, submission_store, user_store)
    for evaluator in ("u-e1", "u-e2", "u-e3"):
        await review.evaluate(submission_id, evaluator, True)

    with pytest.raises(InvalidStateError) as exc_info:
        await review.evaluate(submission_id, "u-e4", True)

    assert exc_info.value.error == "INVALID_STATUS"
