"""
Tests for the chunked parse worker: checkpoints, resume, cancellation and
within-file duplicate flags.
"""

import pytest

from leadflow.core.config import settings
from leadflow.domain.imports import jobs, parse_worker, rows, service
from leadflow.domain.imports.errors import InvalidConfigurationError
from tests.utils.files import contact_rows, make_csv, make_xlsx


@pytest.fixture
def small_chunks(monkeypatch):
    monkeypatch.setattr(settings, "import_parse_chunk_size", 5)


def _upload(owner, content, file_name="leads.csv"):
    return service.create_import_job(owner.id, file_name, content)["job_id"]


def test_parse_reaches_ready(admin_user, small_chunks):
    job_id = _upload(admin_user, make_csv(contact_rows(50)))

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    assert job["status"] == "ready"
    assert job["phase"] == "parse"
    assert job["total_rows"] == 50
    assert job["processed_rows"] == 50
    assert job["valid_rows"] == 50
    assert job["invalid_rows"] == 0
    assert job["total_chunks"] == 10
    assert job["current_chunk"] == 10
    assert job["last_checkpoint"]["chunk_number"] == 10
    assert job["last_checkpoint"]["row_number"] == 50
    assert rows.recorded_chunk_numbers(job_id) == set(range(1, 11))


def test_xlsx_parse(admin_user, small_chunks):
    job_id = _upload(admin_user, make_xlsx(contact_rows(12)), file_name="leads.xlsx")

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    assert job["status"] == "ready"
    assert job["total_chunks"] == 3
    assert rows.count_rows(job_id)["valid"] == 12


def test_invalid_rows_are_recorded(admin_user, small_chunks):
    content = make_csv(
        [
            ("a@example.com", "Jean", "Dupont", ""),
            ("not-an-email", "Marie", "Durand", ""),
            ("", "Paul", "Martin", ""),
        ]
    )
    job_id = _upload(admin_user, content)

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    assert (job["valid_rows"], job["invalid_rows"]) == (1, 2)
    invalid = service.get_rows(job_id, status_filter="invalid")["rows"]
    assert [row["row_number"] for row in invalid] == [2, 3]
    assert invalid[0]["validation_errors"]["email"] == "Invalid email format"
    assert "contact" in invalid[1]["validation_errors"]
    assert job["validation_summary"]["invalid_rows"] == 2


def test_counts_match_persisted_rows(admin_user, small_chunks):
    rows_in = contact_rows(18) + [("broken", "x", "y", "")] * 4
    job_id = _upload(admin_user, make_csv(rows_in))

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    counts = rows.count_rows(job_id)
    assert job["processed_rows"] == counts["total"] == 22
    assert job["valid_rows"] + job["invalid_rows"] == job["processed_rows"]
    assert job["valid_rows"] == counts["valid"]


def test_crash_mid_parse_resumes_after_last_chunk(admin_user, small_chunks, monkeypatch):
    job_id = _upload(admin_user, make_csv(contact_rows(50)))
    original = parse_worker._persist_chunk
    written = []

    def crash_on_fourth_chunk(job_id, chunk_number, records, checkpoint):
        if chunk_number == 4 and not written.count(4):
            written.append(4)
            raise RuntimeError("worker crashed")
        written.append(chunk_number)
        original(job_id, chunk_number, records, checkpoint)

    monkeypatch.setattr(parse_worker, "_persist_chunk", crash_on_fourth_chunk)

    service.enqueue_parse(job_id)

    failed = jobs.get_import_job(job_id)
    assert failed["status"] == "failed"
    assert failed["error_details"] == {"phase": "parse", "chunk": 4, "exception": "RuntimeError"}
    assert failed["current_chunk"] == 3
    assert rows.recorded_chunk_numbers(job_id) == {1, 2, 3}

    service.retry(job_id)

    job = jobs.get_import_job(job_id)
    assert job["status"] == "ready"
    assert job["processed_rows"] == 50
    # Chunks 1-3 were not written a second time.
    assert written == [1, 2, 3, 4, 4, 5, 6, 7, 8, 9, 10]
    stored = service.get_rows(job_id, page_size=100)["rows"]
    assert [row["row_number"] for row in stored] == list(range(1, 51))


def test_cancel_stops_at_next_checkpoint(admin_user, small_chunks, monkeypatch):
    job_id = _upload(admin_user, make_csv(contact_rows(50)))
    original = parse_worker._persist_chunk

    def cancel_after_second_chunk(job_id, chunk_number, records, checkpoint):
        original(job_id, chunk_number, records, checkpoint)
        if chunk_number == 2:
            service.cancel(job_id)

    monkeypatch.setattr(parse_worker, "_persist_chunk", cancel_after_second_chunk)

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    assert job["status"] == "cancelled"
    assert job["completed_at"] is not None
    assert rows.count_rows(job_id)["total"] == 10
    assert job["processed_rows"] < job["total_rows"]


def test_within_file_duplicates_flagged(admin_user, small_chunks):
    content = make_csv(
        [
            ("a@example.com", "Jean", "Dupont", "0612345678"),
            ("b@example.com", "Marie", "Durand", ""),
            ("c@example.com", "Paul", "Martin", ""),
            ("A@Example.com ", "Jean", "Dupont", ""),
            ("b@example.com", "Marie", "Durand", ""),
            ("d@example.com", "Luc", "Petit", ""),
            ("a@example.com", "Jean", "Dupont", ""),
        ]
    )
    job_id = _upload(admin_user, content)

    service.enqueue_parse(job_id)

    job = jobs.get_import_job(job_id)
    assert job["valid_rows"] == 7
    assert job["file_duplicate_rows"] == 3
    duplicates = service.get_rows(job_id, status_filter="file_duplicate")["rows"]
    assert [(row["row_number"], row["duplicate_of_row"]) for row in duplicates] == [
        (4, 1),
        (5, 2),
        (7, 1),
    ]


def test_within_file_check_can_be_disabled(admin_user, small_chunks):
    content = make_csv([("a@example.com", "Jean", "Dupont", ""), ("a@example.com", "Jean", "Dupont", "")])
    job_id = _upload(admin_user, content)
    service.set_options(job_id, duplicate_config={"check_within_file": False})

    service.enqueue_parse(job_id)

    assert jobs.get_import_job(job_id)["file_duplicate_rows"] == 0


def test_parse_requires_contact_mapping(admin_user):
    content = make_csv([("Jean", "Dupont")], headers=("Prenom", "Nom"))
    job_id = _upload(admin_user, content)

    with pytest.raises(InvalidConfigurationError, match="contact field"):
        service.enqueue_parse(job_id)
    assert jobs.get_job_status(job_id) == "pending"


def test_unreadable_file_fails_job(admin_user, fake_storage):
    job_id = _upload(admin_user, make_csv(contact_rows(3)))
    job = jobs.get_import_job(job_id)
    fake_storage.objects.pop(job["storage_path"])

    service.enqueue_parse(job_id)

    failed = jobs.get_import_job(job_id)
    assert failed["status"] == "failed"
    assert failed["error_details"]["phase"] == "parse"
    assert failed["error_details"]["chunk"] is None


def test_redelivered_parse_of_ready_job_is_ignored(admin_user):
    job_id = _upload(admin_user, make_csv(contact_rows(3)))
    service.enqueue_parse(job_id)
    before = jobs.get_import_job(job_id)

    parse_worker.run_parse_job(job_id)

    after = jobs.get_import_job(job_id)
    assert after["status"] == "ready"
    assert after["updated_at"] == before["updated_at"]
