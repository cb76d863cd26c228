from datetime import timedelta

import pytest

from src.core.idempotency import IdempotencyRecord
from src.infrastructure.idempotency import (
    InMemoryIdempotencyRepository,
    SqliteIdempotencyRepository,
)
from tests.shared.factories import FIXED_NOW


@pytest.fixture(params=["in_memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SqliteIdempotencyRepository(database_path=str(tmp_path / "idempotency.db"))
    return InMemoryIdempotencyRepository()


def _record(key="k1", *, body=None, created_at=FIXED_NOW, ttl=timedelta(hours=24)):
    return IdempotencyRecord(
        key=key,
        request_fingerprint="sha256:abc",
        method="POST",
        path="/api/v1/portfolios/pf_001/rebalance",
        status_code=202,
        response_body=body if body is not None else {"job_id": "rebalance-pf_001-1"},
        created_at=created_at,
        expires_at=created_at + ttl,
    )


def test_insert_then_get_round_trips_record(repository):
    assert repository.insert_record_if_absent(_record()) is True

    stored = repository.get_record(key="k1", now=FIXED_NOW)

    assert stored.response_body == {"job_id": "rebalance-pf_001-1"}
    assert stored.status_code == 202
    assert stored.expires_at == FIXED_NOW + timedelta(hours=24)


def test_insert_keeps_existing_live_record(repository):
    repository.insert_record_if_absent(_record(body={"job_id": "first"}))

    assert repository.insert_record_if_absent(_record(body={"job_id": "second"})) is False
    assert repository.get_record(key="k1", now=FIXED_NOW).response_body == {"job_id": "first"}


def test_expired_record_is_invisible_and_replaceable(repository):
    repository.insert_record_if_absent(_record(ttl=timedelta(minutes=1)))
    later = FIXED_NOW + timedelta(minutes=2)

    assert repository.get_record(key="k1", now=later) is None
    assert repository.insert_record_if_absent(
        _record(body={"job_id": "fresh"}, created_at=later)
    ) is True
    assert repository.get_record(key="k1", now=later).response_body == {"job_id": "fresh"}


def test_purge_removes_only_expired_records(repository):
    repository.insert_record_if_absent(_record("old", ttl=timedelta(minutes=1)))
    repository.insert_record_if_absent(_record("live"))

    removed = repository.purge_expired(now=FIXED_NOW + timedelta(minutes=5))

    assert removed == 1
    assert repository.get_record(key="live", now=FIXED_NOW) is not None
    assert repository.get_record(key="old", now=FIXED_NOW) is None


def test_record_keeps_response_media_type(repository):
    record = _record().model_copy(
        update={"response_body": "queued", "media_type": "text/plain; charset=utf-8"}
    )
    repository.insert_record_if_absent(record)

    stored = repository.get_record(key="k1", now=FIXED_NOW)

    assert stored.response_body == "queued"
    assert stored.media_type == "text/plain; charset=utf-8"
    assert _record().media_type == "application/json"
