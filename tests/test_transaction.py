import pytest
import rlp
from eth_utils import decode_hex

from ledgerethcli import (
    LegacyTransaction,
    Signature,
    UnsignedTransaction,
    decode_transaction,
    encode_bip32_path,
    expand_v,
    parse_ether,
    serialize_transaction,
)

TX = UnsignedTransaction(
    to='0x3535353535353535353535353535353535353535',
    value=10 ** 18,
    gas_price=20 * 10 ** 9,
    nonce=9,
    chain_id=1,
)


def test_unsigned_serialization_matches_eip155_example():
    assert serialize_transaction(TX) == (
        '0xec098504a817c800825208943535353535353535353535353535353535353535'
        '880de0b6b3a764000080018080'
    )


def test_signed_transaction_decodes_to_original_fields():
    signature = Signature(r='0x' + '11' * 32, s='0x' + '22' * 32, v=37)
    signed = serialize_transaction(TX, signature)

    tx, decoded_signature = decode_transaction(signed)

    assert tx == TX
    assert decoded_signature.v == 37
    assert int(decoded_signature.r, 16) == int('11' * 32, 16)
    assert int(decoded_signature.s, 16) == int('22' * 32, 16)


def test_serialization_is_deterministic():
    signature = Signature(r='0x01', s='0x02', v=38)
    assert serialize_transaction(TX, signature) == serialize_transaction(TX, signature)
    assert serialize_transaction(TX) == serialize_transaction(TX)


def test_unsigned_form_decodes_without_signature():
    tx, signature = decode_transaction(serialize_transaction(TX))
    assert tx == TX
    assert signature is None


def test_gas_limit_is_plain_transfer_cost():
    decoded = rlp.decode(decode_hex(serialize_transaction(TX)), LegacyTransaction)
    assert decoded.gas == 21000
    assert decoded.data == b''


MAX_WEI = 2 ** 256 - 1


def ether_text(wei):
    digits = str(wei)
    return '{}.{}'.format(digits[:-18], digits[-18:])


@pytest.mark.parametrize('value, expected', [
    ('1.5', 1500000000000000000),
    ('0.01', 10000000000000000),
    ('1', 10 ** 18),
    ('0.000000000000000001', 1),
    ('123456789.123456789123456789', 123456789123456789123456789),
    (ether_text(MAX_WEI), MAX_WEI),
])
def test_parse_ether(value, expected):
    assert parse_ether(value) == expected


@pytest.mark.parametrize('value', [
    '0', '-1', '0.0', 'abc', '', 'nan', 'inf', '0.0000000000000000001',
    '1e-1000000000',
    '1e999999',
    '1e60',
    ether_text(MAX_WEI + 1),
])
def test_parse_ether_rejects(value):
    with pytest.raises(ValueError):
        parse_ether(value)


def test_encode_bip32_path():
    assert encode_bip32_path("m/44'/60'/2'/0/0") == bytes.fromhex(
        '05' '8000002c' '8000003c' '80000002' '00000000' '00000000'
    )


def test_expand_v_keeps_small_chain_ids():
    assert expand_v(37, 1) == 37
    assert expand_v(38, 1) == 38


def test_expand_v_widens_truncated_byte():
    # chain 137: 137 * 2 + 35 = 309, device returns 309 & 0xff = 53 for parity 0
    assert expand_v(53, 137) == 309
    assert expand_v(54, 137) == 310
