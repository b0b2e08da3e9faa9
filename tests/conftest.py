from unittest import mock

import pytest
from eth_utils import to_checksum_address

from ledgerethcli import InvalidInput, MESSAGES, SUCCESS


def address_for(index):
    return to_checksum_address('0x' + '{:040x}'.format(0xabc000 + index))


class FakeTransport:
    """Replays (sw, response) pairs and records every APDU."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = 0

    def exchange(self, cla, ins, p1=0, p2=0, cdata=b''):
        self.calls.append((cla, ins, p1, p2, cdata))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed += 1


class FakeLedger:
    def __init__(self, sign_error=None, v=37):
        self.sign_error = sign_error
        self.v = v
        self.requested = []
        self.signed = []
        self.closed = 0

    def get_address(self, path):
        self.requested.append(path)
        return address_for(int(path.split('/')[3].rstrip("'")))

    def sign_transaction(self, path, raw_tx):
        self.signed.append((path, raw_tx))
        if self.sign_error is not None:
            raise self.sign_error
        return self.v, '11' * 32, '22' * 32

    def close(self):
        self.closed += 1


class ScriptedPrompter:
    """Answers prompts from fixed scripts, retrying text input like a console would."""

    def __init__(self, select='0', texts=(), confirm=False):
        self.selection = select
        self.texts = list(texts)
        self.answer = confirm
        self.errors = []
        self.options = None

    def select(self, message, options):
        self.options = options
        return self.selection

    def text(self, message, parse):
        while True:
            value = self.texts.pop(0)
            try:
                return parse(value)
            except InvalidInput as ex:
                self.errors.append(str(ex))

    def confirm(self, message, default=False):
        return self.answer


def response_for_address(address):
    pubkey = b'\x04' + bytes(64)
    ascii_address = address[2:].lower().encode('ascii')
    return SUCCESS, bytes([len(pubkey)]) + pubkey + bytes([len(ascii_address)]) + ascii_address


@pytest.fixture
def text():
    return MESSAGES['en']


@pytest.fixture
def client():
    client = mock.Mock()
    client.get_transaction_count.return_value = 7
    client.get_gas_price.return_value = 20000000000
    client.get_chain_id.return_value = 1
    client.send_raw_transaction.return_value = '0x' + 'ab' * 32
    return client
