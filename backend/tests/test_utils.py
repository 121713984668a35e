from datetime import date, datetime, timedelta, timezone

import pytest

from emdr_api.utils.dates import isoformat, parse_hhmm, to_utc_naive, week_start
from emdr_api.utils.pagination import parse_non_negative_int, parse_page, split_csv
from emdr_api.utils.storage import safe_filename, save_upload


@pytest.mark.parametrize('raw,expected', [
    (None, 7), ('3', 3), (' 12 ', 12), ('0', 0), ('-1', 7), ('abc', 7), ('2.5', 7),
])
def test_parse_non_negative_int(raw, expected):
    assert parse_non_negative_int(raw, 7) == expected


def test_parse_page_and_csv():
    assert parse_page(None, None) == (20, 0)
    assert parse_page('5', '10', default_limit=50) == (5, 10)
    assert split_csv(None) == []
    assert split_csv('A, B,,C ') == ['A', 'B', 'C']


def test_parse_hhmm():
    assert parse_hhmm('00:00') == 0
    assert parse_hhmm('22:30') == 22 * 60 + 30
    for bad in ('24:00', '12:60', '7pm', '', 'ab:cd'):
        with pytest.raises(ValueError):
            parse_hhmm(bad)


def test_date_helpers():
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_utc_naive(aware) == datetime(2030, 1, 1, 10, 0)
    assert to_utc_naive(None) is None
    # 2030-01-03 is a Thursday
    assert week_start(datetime(2030, 1, 3, 18)) == date(2029, 12, 31)
    assert isoformat(datetime(2030, 1, 1)) == '2030-01-01T00:00:00Z'


def test_safe_filename():
    assert safe_filename('../../etc/passwd') == 'passwd'
    assert safe_filename('C:\\Users\\me\\log file.pdf') == 'log_file.pdf'
    assert safe_filename('...') == 'upload'


def test_save_upload_never_overwrites(tmp_path):
    first = save_upload(3, 'log.pdf', b'one', root=tmp_path)
    second = save_upload(3, 'log.pdf', b'two', root=tmp_path)
    assert first != second
    assert first.parent == tmp_path / '3'
    assert first.read_bytes() == b'one' and second.read_bytes() == b'two'
