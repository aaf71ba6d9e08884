import datetime as dt
from decimal import Decimal
import pytest
from sqlite_wrapper.models import KeyValue, as_key_values, as_row, to_value


@pytest.mark.parametrize('raw, expected', [
    (None, None),
    ('text', 'text'),
    (True, '1'),
    (False, '0'),
    (42, '42'),
    (-7, '-7'),
    (1.5, '1.5'),
    (Decimal('2.50'), '2.50'),
    (dt.timedelta(minutes=2, seconds=5), '125'),
    (dt.timedelta(seconds=9.9), '9'),
])
def test_to_value_canonicalizes(raw, expected):
    assert to_value(raw) == expected


def test_datetime_encodes_epoch_seconds():
    aware = dt.datetime(2020, 1, 1, 0, 0, 30, tzinfo=dt.timezone.utc)
    assert to_value(aware) == '1577836830'
    # offset-aware values are normalized to UTC first
    plus_two = dt.datetime(2020, 1, 1, 2, 0, 30, tzinfo=dt.timezone(dt.timedelta(hours=2)))
    assert to_value(plus_two) == '1577836830'


def test_unsupported_type_rejected():
    with pytest.raises(TypeError):
        to_value(b'raw')
    with pytest.raises(TypeError):
        KeyValue('col', [1, 2])


def test_key_value_is_immutable_and_comparable():
    kv = KeyValue('number', 3)
    assert kv.key == 'number' and kv.value == '3'
    assert kv == KeyValue('number', '3')
    assert not kv.is_null
    assert KeyValue('number').is_null
    with pytest.raises(Exception):
        kv.key = 'other'


def test_as_key_values_accepts_mappings_pairs_and_key_values():
    assert as_key_values(None) == []
    assert as_key_values({'a': 1, 'b': None}) == [KeyValue('a', '1'), KeyValue('b')]
    assert as_key_values([('a', True), KeyValue('b', 'x')]) == [KeyValue('a', '1'), KeyValue('b', 'x')]
    assert as_key_values(KeyValue('c', 0)) == [KeyValue('c', '0')]


def test_as_key_values_preserves_order_and_duplicates():
    kvs = as_key_values([('z', 1), ('a', 2), ('z', 3)])
    assert [kv.key for kv in kvs] == ['z', 'a', 'z']
    assert [kv.value for kv in kvs] == ['1', '2', '3']


def test_as_row():
    assert as_row([1, None, 'x', False]) == ['1', None, 'x', '0']


@pytest.mark.parametrize('bad', ['number', b'number', ['number'], [('a', 1, 2)], [3]])
def test_as_key_values_rejects_bare_strings_and_malformed_items(bad):
    with pytest.raises(TypeError):
        as_key_values(bad)
