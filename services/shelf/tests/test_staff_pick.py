from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
from pathlib import Path

import pytest
from shelf.errors import Conflict, NotFound, Unauthorized
from shelf.models import RecommendationInput
from shelf.repository import ArchiveOutcome, ShelfRepository
from shelf.service import ShelfService

pytestmark = pytest.mark.integration

ADMIN = "user_admin"
ALICE = "user_alice"


@pytest.fixture
def service(tmp_path: Path):
    repository = ShelfRepository(str(tmp_path / "shelf.sqlite3"))
    repository.connect()
    shelf = ShelfService(repository, admin_emails=["admin@example.com"])
    shelf.sync_user(ADMIN, "admin@example.com", "Ada Admin")
    shelf.sync_user(ALICE, "alice@example.com", "Alice")
    yield shelf
    repository.close()


def create(service: ShelfService, title: str, subject: str = ALICE) -> str:
    return service.create_recommendation(
        subject,
        RecommendationInput(title=title, genres=["Drama"]),
    )


def staff_pick_ids(service: ShelfService) -> list[str]:
    return [record.id for record in service.repository.list_staff_picks()]


def test_marking_swaps_and_reports_previous_pick(service: ShelfService) -> None:
    first = create(service, "Alien")
    second = create(service, "Heat")

    assert service.mark_staff_pick(ADMIN, first).previous_staff_pick is None
    result = service.mark_staff_pick(ADMIN, second)

    assert result.previous_staff_pick is not None
    assert result.previous_staff_pick.id == first
    assert result.previous_staff_pick.title == "Alien"
    assert staff_pick_ids(service) == [second]


def test_remarking_current_pick_keeps_single_pick(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    service.mark_staff_pick(ADMIN, recommendation_id)

    result = service.mark_staff_pick(ADMIN, recommendation_id)

    assert result.previous_staff_pick is None
    assert staff_pick_ids(service) == [recommendation_id]


def test_unmark_is_idempotent(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    service.mark_staff_pick(ADMIN, recommendation_id)

    assert service.unmark_staff_pick(ADMIN, recommendation_id) is True
    after_first = service.repository.get_recommendation(recommendation_id)
    assert service.unmark_staff_pick(ADMIN, recommendation_id) is False
    after_second = service.repository.get_recommendation(recommendation_id)

    assert after_first is not None and after_second is not None
    assert after_second.is_staff_pick is False
    assert after_second.updated_at == after_first.updated_at
    assert staff_pick_ids(service) == []


def test_unmark_unknown_record_is_not_found(service: ShelfService) -> None:
    with pytest.raises(NotFound):
        service.unmark_staff_pick(ADMIN, "missing")


def test_mark_unknown_or_archived_record(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    service.remove_recommendation(ALICE, recommendation_id)

    with pytest.raises(NotFound):
        service.mark_staff_pick(ADMIN, "missing")
    with pytest.raises(Conflict):
        service.mark_staff_pick(ADMIN, recommendation_id)
    assert staff_pick_ids(service) == []


def test_owner_cannot_mark_own_record(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")

    with pytest.raises(Unauthorized, match="Admin access required"):
        service.mark_staff_pick(ALICE, recommendation_id)
    with pytest.raises(Unauthorized):
        service.unmark_staff_pick(ALICE, recommendation_id)


def test_failed_mark_leaves_current_pick(service: ShelfService) -> None:
    kept = create(service, "Alien")
    archived = create(service, "Heat")
    service.mark_staff_pick(ADMIN, kept)
    service.remove_recommendation(ADMIN, archived)

    with pytest.raises(Conflict):
        service.mark_staff_pick(ADMIN, archived)

    assert staff_pick_ids(service) == [kept]


def test_archiving_the_pick_clears_it(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    service.mark_staff_pick(ADMIN, recommendation_id)

    service.remove_recommendation(ALICE, recommendation_id)

    stored = service.repository.get_recommendation(recommendation_id)
    assert stored is not None
    assert stored.is_archived is True
    assert stored.is_staff_pick is False
    assert staff_pick_ids(service) == []


def test_archiving_owner_clears_the_pick(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    service.mark_staff_pick(ADMIN, recommendation_id)

    assert service.archive_user(ALICE) == 1
    assert staff_pick_ids(service) == []


def test_store_rejects_a_second_flagged_row(service: ShelfService) -> None:
    first = create(service, "Alien")
    second = create(service, "Heat")
    service.mark_staff_pick(ADMIN, first)

    with pytest.raises(sqlite3.IntegrityError):
        with service.repository.transaction() as connection:
            connection.execute(
                "UPDATE recommendations SET is_staff_pick = 1 WHERE id = ?",
                (second,),
            )
    assert staff_pick_ids(service) == [first]


def test_random_operation_sequences_keep_at_most_one_pick(service: ShelfService) -> None:
    rng = random.Random(7)
    ids = [create(service, f"Film {index}") for index in range(6)]

    for _ in range(200):
        target = rng.choice(ids)
        action = rng.choice(["mark", "mark", "unmark", "remove"])
        try:
            if action == "mark":
                service.mark_staff_pick(ADMIN, target)
            elif action == "unmark":
                service.unmark_staff_pick(ADMIN, target)
            else:
                service.remove_recommendation(ADMIN, target)
        except Conflict:
            pass
        picks = service.repository.list_staff_picks()
        assert len(picks) <= 1
        assert all(not pick.is_archived for pick in picks)


def test_concurrent_marks_leave_exactly_one_pick(service: ShelfService) -> None:
    ids = [create(service, f"Film {index}") for index in range(8)]
    barrier = threading.Barrier(len(ids))
    errors: list[BaseException] = []
    previous: list[str | None] = []

    def mark(recommendation_id: str) -> None:
        barrier.wait()
        try:
            result = service.mark_staff_pick(ADMIN, recommendation_id)
        except BaseException as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)
            return
        prior = result.previous_staff_pick
        previous.append(prior.id if prior else None)

    threads = [threading.Thread(target=mark, args=(target,)) for target in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(staff_pick_ids(service)) == 1
    # Exactly one caller found no previous pick; every other one displaced someone.
    assert previous.count(None) == 1


def test_archive_outcome_reflects_the_write(service: ShelfService) -> None:
    recommendation_id = create(service, "Alien")
    before_pick = service.repository.get_recommendation(recommendation_id)
    service.mark_staff_pick(ADMIN, recommendation_id)

    outcome = service.repository.archive_recommendation(recommendation_id)

    assert before_pick is not None and before_pick.is_staff_pick is False
    assert outcome == ArchiveOutcome(archived=True, cleared_staff_pick=True)
    assert service.repository.archive_recommendation(recommendation_id) == ArchiveOutcome(
        archived=False,
        cleared_staff_pick=False,
    )


def test_cleared_pick_log_follows_the_store_not_the_earlier_read(
    service: ShelfService,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    picked_late = create(service, "Alien")
    never_picked = create(service, "Heat")
    stale = {
        record_id: service.repository.get_recommendation(record_id)
        for record_id in (picked_late, never_picked)
    }
    service.mark_staff_pick(ADMIN, picked_late)
    # Hand the service snapshots taken before the pick landed.
    monkeypatch.setattr(service, "_get_or_raise", lambda record_id: stale[record_id])

    with caplog.at_level(logging.INFO, logger="hypeshelf.shelf"):
        service.remove_recommendation(ALICE, picked_late)
        service.remove_recommendation(ALICE, never_picked)

    cleared = [
        json.loads(record.getMessage())["recommendation_id"]
        for record in caplog.records
        if "staff_pick_cleared_on_archive" in record.getMessage()
    ]
    assert cleared == [picked_late]
