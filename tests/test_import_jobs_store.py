"""
Tests for the persistent import job store: lifecycle, counters and claims.
"""
from datetime import datetime, timedelta, timezone

import pytest

from jobimport.db.models import ImportRowError
from jobimport.db.session import session_scope
from jobimport.domain.imports.errors import (
    AlreadyClaimedError,
    ConfigurationError,
    FieldViolation,
    ImportInProgressError,
    ImportJobNotFoundError,
    InvalidStateTransitionError,
    MappingError,
    RowError,
    DuplicateSkip,
    StaleJobStateError,
)
from jobimport.domain.imports.jobs import (
    BatchDelta,
    apply_batch_result,
    begin_processing,
    claim_import_job,
    complete_import_job,
    compute_progress,
    create_import_job,
    fail_import_job,
    fail_timed_out_jobs,
    find_due_pending_jobs,
    find_stale_active_jobs,
    get_import_job,
    is_cancel_requested,
    list_import_jobs,
    list_row_errors,
    mark_cancelled,
    reclaim_stale_job,
    record_row_errors,
    request_cancel,
    retry_import_job,
)


@pytest.fixture
def processing_import(claimed_import):
    def _create(total=10, **overrides):
        job = claimed_import(**overrides)
        return begin_processing(job["id"], total)

    return _create


class TestCreateImport:
    def test_new_import_is_pending_with_zero_counters(self, new_import):
        job = new_import(import_name="March openings")
        assert job["status"] == "pending"
        assert job["progress"] == 0
        assert (job["total_records"], job["successful_imports"], job["failed_imports"], job["skipped_records"]) == (
            0,
            0,
            0,
            0,
        )
        assert get_import_job(job["id"])["import_name"] == "March openings"

    def test_invalid_configuration_is_rejected_before_persisting(self):
        with pytest.raises(ConfigurationError):
            create_import_job(
                company_id="acme",
                created_by="u",
                file_url="s3://b/k.csv",
                validation_rules={"nope": {"kind": "required"}},
            )
        assert list_import_jobs(company_id="acme") == ([], 0)

    def test_unsupported_file_type(self):
        with pytest.raises(ConfigurationError, match="unsupported file type"):
            create_import_job(company_id="acme", created_by="u", file_url="s3://b/k.xml", file_type="xml")

    def test_second_import_rejected_while_one_is_active(self, claimed_import, new_import):
        active = claimed_import()
        with pytest.raises(ImportInProgressError) as exc_info:
            new_import()
        assert exc_info.value.active_import_id == active["id"]
        # other companies are unaffected
        assert new_import(company_id="globex")["status"] == "pending"

    def test_pending_imports_do_not_block_creation(self, new_import):
        new_import()
        assert new_import()["status"] == "pending"


class TestQueries:
    def test_company_scoping(self, new_import):
        job = new_import(company_id="acme")
        assert get_import_job(job["id"], company_id="globex") is None
        assert get_import_job(job["id"], company_id="acme")["id"] == job["id"]
        assert get_import_job("missing") is None

    def test_list_filters_and_paginates(self, new_import):
        for _ in range(3):
            new_import()
        new_import(company_id="globex")
        jobs, total = list_import_jobs(company_id="acme", limit=2)
        assert total == 3
        assert len(jobs) == 2
        assert list_import_jobs(company_id="acme", status="completed") == ([], 0)


class TestClaim:
    def test_claim_moves_pending_to_validating(self, new_import):
        job = claim_import_job(new_import()["id"], "worker-a")
        assert job["status"] == "validating"
        assert job["claimed_by"] == "worker-a"
        assert job["started_at"] is not None

    def test_claim_is_exclusive(self, new_import):
        job = new_import()
        claim_import_job(job["id"], "worker-a")
        with pytest.raises(AlreadyClaimedError) as exc_info:
            claim_import_job(job["id"], "worker-b")
        assert exc_info.value.status == "validating"

    def test_claim_defers_while_company_has_active_import(self, new_import):
        first, second = new_import(), new_import()
        claim_import_job(first["id"], "worker-a")
        with pytest.raises(ImportInProgressError):
            claim_import_job(second["id"], "worker-b")
        assert get_import_job(second["id"])["status"] == "pending"

    def test_claim_missing_import(self):
        with pytest.raises(ImportJobNotFoundError):
            claim_import_job("missing", "worker-a")

    def test_reclaim_only_stale_jobs(self, claimed_import):
        job = claimed_import()
        with pytest.raises(AlreadyClaimedError):
            reclaim_stale_job(job["id"], "worker-b", datetime.now(timezone.utc) - timedelta(minutes=5))
        resumed = reclaim_stale_job(job["id"], "worker-b", datetime.now(timezone.utc) + timedelta(seconds=1))
        assert resumed["claimed_by"] == "worker-b"
        assert resumed["status"] == "validating"


class TestCounters:
    def test_begin_processing_persists_total(self, claimed_import):
        job = begin_processing(claimed_import()["id"], 25)
        assert job["status"] == "processing"
        assert job["total_records"] == 25

    def test_begin_processing_requires_validating(self, new_import):
        with pytest.raises(StaleJobStateError):
            begin_processing(new_import()["id"], 5)

    def test_batches_accumulate_and_progress_never_reaches_100(self, processing_import):
        job = processing_import(total=10)
        job = apply_batch_result(job["id"], BatchDelta(successful=3, failed=1, skipped=1))
        assert (job["successful_imports"], job["failed_imports"], job["skipped_records"]) == (3, 1, 1)
        assert job["progress"] == 50
        job = apply_batch_result(job["id"], BatchDelta(successful=5))
        assert job["processed_records"] == 10
        assert job["progress"] == 99
        completed = complete_import_job(job["id"])
        assert completed["status"] == "completed"
        assert completed["progress"] == 100
        assert completed["completed_at"] is not None

    def test_batch_rejected_once_job_left_processing(self, processing_import):
        job = processing_import()
        fail_import_job(job["id"], "boom")
        with pytest.raises(StaleJobStateError):
            apply_batch_result(job["id"], BatchDelta(successful=1))
        assert get_import_job(job["id"])["successful_imports"] == 0

    @pytest.mark.parametrize("processed, total, expected", [(0, 0, 0), (1, 3, 33), (3, 3, 99), (2, 200, 1)])
    def test_compute_progress(self, processed, total, expected):
        assert compute_progress(processed, total) == expected


class TestRowErrors:
    def test_record_and_list(self, processing_import):
        job = processing_import()
        with session_scope() as session:
            record_row_errors(
                session,
                job["id"],
                [
                    RowError(4, [FieldViolation("salary_min", "must be >= 0")]),
                    DuplicateSkip(6, ["title", "location"], first_row_index=5),
                ],
            )
        errors, total = list_row_errors(job["id"])
        assert total == 2
        assert errors[0] == {"row_index": 4, "outcome": "failed", "errors": [{"field": "salary_min", "reason": "must be >= 0"}]}
        assert errors[1]["outcome"] == "skipped"
        assert errors[1]["errors"] == [{"field": "title+location", "reason": "duplicate of row 5"}]
        assert list_row_errors(job["id"], outcome="skipped")[1] == 1

    def test_rows_roll_back_with_the_batch(self, processing_import):
        job = processing_import()
        with pytest.raises(StaleJobStateError):
            with session_scope() as session:
                record_row_errors(session, job["id"], [RowError(0, [FieldViolation("title", "is required")])])
                fail_import_job(job["id"], "timed out elsewhere")
                apply_batch_result(job["id"], BatchDelta(failed=1), session=session)
        with session_scope() as session:
            assert session.query(ImportRowError).count() == 0


class TestTerminalStates:
    def test_failure_counts_unreached_rows(self, processing_import):
        job = processing_import(total=10)
        apply_batch_result(job["id"], BatchDelta(successful=4))
        assert fail_import_job(job["id"], MappingError(["title"], ["Name"])) is True
        failed = get_import_job(job["id"])
        assert failed["status"] == "failed"
        assert failed["failed_imports"] == 6
        assert failed["successful_imports"] + failed["failed_imports"] + failed["skipped_records"] == 10
        assert failed["last_error"].startswith("mapping_error:")

    def test_file_level_failure_keeps_zero_counters(self, claimed_import):
        job = claimed_import()
        fail_import_job(job["id"], "parse_error: empty", account_remaining=False)
        failed = get_import_job(job["id"])
        assert failed["total_records"] == failed["failed_imports"] == 0

    def test_terminal_imports_are_immutable(self, processing_import):
        job = processing_import(total=2)
        apply_batch_result(job["id"], BatchDelta(successful=2))
        complete_import_job(job["id"])
        assert fail_import_job(job["id"], "late") is False
        assert mark_cancelled(job["id"]) is False
        assert get_import_job(job["id"])["status"] == "completed"

    def test_cancelled_at_is_set_once(self, processing_import):
        job = processing_import()
        assert mark_cancelled(job["id"]) is True
        first = get_import_job(job["id"])["cancelled_at"]
        assert mark_cancelled(job["id"]) is False
        assert get_import_job(job["id"])["cancelled_at"] == first


class TestCancellation:
    def test_pending_import_is_cancelled_immediately(self, new_import):
        job = request_cancel(new_import()["id"], "acme")
        assert job["status"] == "cancelled"
        assert job["cancelled_at"] is not None

    def test_active_import_gets_flag(self, processing_import):
        job = processing_import()
        assert not is_cancel_requested(job["id"])
        flagged = request_cancel(job["id"], "acme")
        assert flagged["status"] == "processing"
        assert flagged["cancel_requested_at"] is not None
        assert is_cancel_requested(job["id"])

    def test_terminal_import_is_returned_unchanged(self, processing_import):
        job = processing_import(total=1)
        apply_batch_result(job["id"], BatchDelta(successful=1))
        complete_import_job(job["id"])
        assert request_cancel(job["id"])["status"] == "completed"
        assert get_import_job(job["id"])["cancel_requested_at"] is None

    def test_other_company_cannot_cancel(self, new_import):
        with pytest.raises(ImportJobNotFoundError):
            request_cancel(new_import()["id"], "globex")


class TestRetry:
    def test_failed_import_is_cloned(self, claimed_import):
        job = claimed_import(validation_rules={"title": {"kind": "unique"}}, import_name="batch 1")
        fail_import_job(job["id"], "file_unavailable: gone")
        retried = retry_import_job(job["id"], "acme", "user-2")
        assert retried["id"] != job["id"]
        assert retried["status"] == "pending"
        assert retried["retry_of"] == job["id"]
        assert retried["created_by"] == "user-2"
        assert retried["validation_rules"] == {"title": {"kind": "unique"}}
        assert get_import_job(job["id"])["status"] == "failed"

    def test_only_failed_imports_can_be_retried(self, new_import):
        with pytest.raises(InvalidStateTransitionError):
            retry_import_job(new_import()["id"], "acme", "user-2")


class TestSupervisorQueries:
    def test_due_pending_respects_schedule(self, new_import):
        now = datetime.now(timezone.utc)
        due = new_import()
        later = new_import(scheduled_at=now + timedelta(hours=1))
        assert find_due_pending_jobs(now) == [due["id"]]
        assert set(find_due_pending_jobs(now + timedelta(hours=2))) == {due["id"], later["id"]}

    def test_stale_active_jobs(self, claimed_import):
        job = claimed_import()
        now = datetime.now(timezone.utc)
        assert find_stale_active_jobs(now - timedelta(minutes=5)) == []
        assert find_stale_active_jobs(now + timedelta(seconds=1)) == [job["id"]]

    def test_timed_out_jobs_fail_with_remaining_rows_counted(self, processing_import):
        job = processing_import(total=8)
        apply_batch_result(job["id"], BatchDelta(successful=3))
        now = datetime.now(timezone.utc)
        assert fail_timed_out_jobs(3600, now) == []
        assert fail_timed_out_jobs(60, now + timedelta(minutes=5)) == [job["id"]]
        failed = get_import_job(job["id"])
        assert failed["status"] == "failed"
        assert failed["last_error"].startswith("timeout:")
        assert failed["failed_imports"] == 5
