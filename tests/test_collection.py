import pytest
from bson import ObjectId

import collection
import ledger
import notifications
import reports
from errors import NotFoundError, PersistenceError, TaskConflict, ValidationError


@pytest.fixture
def report(reporter):
    return reports.submit_report(reporter["id"], "Main St", "plastic", "5kg")


def test_list_open_tasks_includes_every_status(db, reporter):
    first = reports.submit_report(reporter["id"], "Main St", "plastic", "5kg")
    reports.submit_report(reporter["id"], "High St", "glass", 2)
    db["report"].update_one({"_id": ObjectId(first["id"])}, {"$set": {"status": "verified"}})

    tasks = collection.list_open_tasks()

    assert [t["location"] for t in tasks] == ["High St", "Main St"]
    assert tasks[1]["status"] == "verified"
    assert set(tasks[0]) == {"id", "location", "waste_type", "amount", "status", "date", "collector_id"}


def test_claim_sets_status_and_collector(db, report, collector):
    task = collection.claim(report["id"], collector["id"], "in_progress")

    assert task["status"] == "in_progress"
    assert task["collector_id"] == collector["id"]


def test_claim_unknown_task_returns_none(db, collector):
    assert collection.claim(str(ObjectId()), collector["id"], "in_progress") is None
    assert collection.claim("not-an-id", collector["id"], "in_progress") is None


def test_claim_rejects_unknown_status(db, report, collector):
    with pytest.raises(ValidationError):
        collection.claim(report["id"], collector["id"], "lost")


def test_second_collector_cannot_take_claimed_task(db, report, collector):
    other = {"id": str(ObjectId())}
    assert collection.claim(report["id"], collector["id"], "in_progress") is not None

    assert collection.claim(report["id"], other["id"], "in_progress") is None
    assert reports.get_report(report["id"])["collector_id"] == collector["id"]


def test_claim_with_stale_expected_status_fails(db, report, collector):
    collection.claim(report["id"], collector["id"], "in_progress")

    assert collection.claim(report["id"], collector["id"], "completed", expected_status="pending") is None
    assert collection.claim(report["id"], collector["id"], "completed", expected_status="in_progress") is not None


def test_claim_cannot_mark_task_verified(db, report, collector):
    with pytest.raises(ValidationError):
        collection.claim(report["id"], collector["id"], "verified")

    assert reports.get_report(report["id"])["status"] == "pending"
    assert db["collectedwaste"].count_documents({}) == 0
    assert ledger.balance(collector["id"]) == 0


def test_verified_task_cannot_be_claimed_again(db, report, collector, make_verifier):
    collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg", verifier=make_verifier(0.9))
    assert collection.claim(report["id"], collector["id"], "in_progress") is None


def test_verify_collection_accepts_confident_match(db, report, collector, make_verifier):
    verifier = make_verifier(0.75)

    outcome = collection.verify_collection(report["id"], collector["id"], b"photo", "image/png", verifier=verifier)

    assert outcome.verified is True
    assert outcome.points_awarded == 20
    assert verifier.calls == [(b"photo", "image/png", "plastic", 5.0)]
    assert reports.get_report(report["id"])["status"] == "verified"
    rows = list(db["collectedwaste"].find({"report_id": report["id"]}))
    assert len(rows) == 1
    assert rows[0]["collector_id"] == collector["id"]
    earned = list(db["transaction"].find({"user_id": collector["id"], "type": "earned_collect"}))
    assert len(earned) == 1
    assert ledger.balance(collector["id"]) == 20


def test_verify_collection_below_threshold_changes_nothing(db, report, collector, make_verifier):
    collection.claim(report["id"], collector["id"], "in_progress")

    outcome = collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg",
                                           verifier=make_verifier(0.5))

    assert outcome.verified is False
    assert outcome.points_awarded == 0
    assert reports.get_report(report["id"])["status"] == "in_progress"
    assert db["collectedwaste"].count_documents({}) == 0
    assert ledger.balance(collector["id"]) == 0


@pytest.mark.parametrize("waste_type_match,quantity_match", [(False, True), (True, False)])
def test_verify_collection_mismatch_is_rejected(db, report, collector, make_verifier,
                                                waste_type_match, quantity_match):
    verifier = make_verifier(0.95, waste_type_match, quantity_match)
    outcome = collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg", verifier=verifier)

    assert outcome.verified is False
    assert reports.get_report(report["id"])["status"] == "pending"


def test_threshold_is_strict(db, report, collector, make_verifier):
    outcome = collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg",
                                           verifier=make_verifier(0.7))
    assert outcome.verified is False


def test_second_verification_is_a_conflict(db, report, collector, make_verifier):
    collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg", verifier=make_verifier(0.9))

    with pytest.raises(TaskConflict):
        collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg",
                                     verifier=make_verifier(0.9))
    assert ledger.balance(collector["id"]) == 20
    assert db["collectedwaste"].count_documents({}) == 1


def test_verify_task_held_by_someone_else(db, report, collector, make_verifier):
    collection.claim(report["id"], str(ObjectId()), "in_progress")
    verifier = make_verifier(0.9)

    with pytest.raises(TaskConflict):
        collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg", verifier=verifier)
    assert verifier.calls == []


def test_verify_unknown_task(db, collector, make_verifier):
    with pytest.raises(NotFoundError):
        collection.verify_collection(str(ObjectId()), collector["id"], b"photo", "image/jpeg",
                                     verifier=make_verifier(0.9))


def test_credit_failure_reopens_task(db, report, collector, make_verifier, monkeypatch):
    collection.claim(report["id"], collector["id"], "completed")

    def broken(*args, **kwargs):
        raise PersistenceError("transaction append failed")

    monkeypatch.setattr(ledger, "earn", broken)
    with pytest.raises(PersistenceError):
        collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg",
                                     verifier=make_verifier(0.9))

    restored = reports.get_report(report["id"])
    assert restored["status"] == "completed"
    assert restored["collector_id"] == collector["id"]
    assert db["collectedwaste"].count_documents({}) == 0


def test_collector_is_notified(db, report, collector, make_verifier):
    collection.verify_collection(report["id"], collector["id"], b"photo", "image/jpeg", verifier=make_verifier(0.9))

    messages = [n["message"] for n in notifications.list_unread(collector["id"])]
    assert messages == ["You've earned 20 points for collecting waste"]
