import pytest

from intake.triage.identifiers import (
    find_cnpj,
    format_cnpj,
    is_valid_cnpj,
    normalize_cnpj,
    scan_messages,
)


@pytest.mark.parametrize(
    "value", ["11222333000181", "11.222.333/0001-81", "11.222.333/000181"]
)
def test_valid_cnpj(value):
    assert is_valid_cnpj(value)


@pytest.mark.parametrize(
    "value", ["11222333000182", "00000000000000", "1122233300018", "abc"]
)
def test_invalid_cnpj(value):
    assert not is_valid_cnpj(value)


def test_normalize_and_format():
    assert normalize_cnpj("11.222.333/0001-81") == "11222333000181"
    assert format_cnpj("11222333000181") == "11.222.333/0001-81"
    assert format_cnpj("123") == "123"


def test_find_cnpj_in_free_text():
    text = "Bom dia, nosso CNPJ é 11.222.333/0001-81, obrigado"
    assert find_cnpj(text) == "11222333000181"


def test_find_cnpj_skips_invalid_numbers():
    assert find_cnpj("pedido 11222333000182 e cnpj 11222333000181") == "11222333000181"
    assert find_cnpj("telefone 5511999990000") is None
    assert find_cnpj(None) is None


def test_digits_embedded_in_longer_number_are_ignored():
    assert find_cnpj("9911222333000181") is None


def test_scan_messages_returns_first_hit():
    assert scan_messages(["sem cnpj", None, "11.222.333/0001-81"]) == "11222333000181"
    assert scan_messages([]) is None
