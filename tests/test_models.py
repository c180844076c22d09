import pytest

from core.models import JobRecord, normalize_date, normalize_job_details, normalize_time, normalize_zip


def test_job_key_and_description():
    job = JobRecord("23.08.2025", "15:00", "58452", "  Witten   Annen ")
    assert job.key == "23.08.2025_15:00_58452"
    assert job.city == "Witten Annen"
    assert job.describe() == "Am 23.08.2025 um 15:00 in 58452 Witten Annen"
    assert JobRecord("23.08.2025", "15:00", "58452").describe() == "Am 23.08.2025 um 15:00 in 58452"


@pytest.mark.parametrize(
    "date,time,zip_code",
    [
        ("2025-08-23", "15:00", "58452"),
        ("23.08.2025", "15", "58452"),
        ("23.08.2025", "15:00", "5845"),
        ("", "15:00", "58452"),
    ],
)
def test_job_record_rejects_malformed_fields(date, time, zip_code):
    with pytest.raises(ValueError):
        JobRecord(date, time, zip_code)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("10.3 0", "10:30"),
        ("9", "09:00"),
        (9, "09:00"),
        ("9.30", "09:30"),
        ("9:30", "09:30"),
        ("  14:05 ", "14:05"),
        ("24:00", None),
        ("9:75", None),
        ("abends", None),
        (None, None),
    ],
)
def test_normalize_time(raw, expected):
    assert normalize_time(raw) == expected


def test_normalize_date_and_zip():
    assert normalize_date("1.8.2025") == "01.08.2025"
    assert normalize_date("23. 08. 2025") == "23.08.2025"
    assert normalize_date("23.08.") is None
    assert normalize_zip(" 58452 ") == "58452"
    assert normalize_zip(58452) == "58452"
    assert normalize_zip("584520") is None


def test_normalize_job_details_mapping():
    job = normalize_job_details({"date": "23.8.2025", "time": "10.3 0", "zip": "58452", "city": None})
    assert job == JobRecord("23.08.2025", "10:30", "58452", "")


def test_normalize_job_details_passthrough_and_invalid():
    job = JobRecord("23.08.2025", "15:00", "58452", "Witten")
    assert normalize_job_details(job) is job
    assert normalize_job_details(None) is None
    assert normalize_job_details("23.08.2025 15:00 58452") is None
    assert normalize_job_details({"date": "23.08.2025", "time": "15:00"}) is None
