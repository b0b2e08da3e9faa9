#!/usr/bin/env python3

import re
import sys
import argparse
import logging
import logging.handlers
from dataclasses import dataclass
from decimal import Decimal, DecimalException, InvalidOperation, Underflow, localcontext
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, TypeVar

import click
import rlp
from rlp.sedes import Binary, big_endian_int, binary
from eth_utils import decode_hex, encode_hex, remove_0x_prefix, to_canonical_address, to_checksum_address
from ledgercomm import Transport
from ledgercomm.interfaces.hid_device import HID
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import Web3Exception

LOG_FILE = 'ledgerethcli.log'
logger = logging.getLogger('logger')

DEFAULT_RPC_URL = 'https://eth.merkle.io'
DERIVATION_PATH = "m/44'/60'/{}'/0/0"
GAS_LIMIT = 21000
WEI_PER_ETHER = 10 ** 18
ADDRESS_RE = re.compile(r'0x[0-9a-fA-F]{40}')

LEDGER_VENDOR_ID = 0x2C97
CLA = 0xe0
INS_GET_ADDRESS = 0x02
INS_SIGN_TRANSACTION = 0x04
INS_GET_APP_CONFIGURATION = 0x06
P1_FIRST = 0x00
P1_MORE = 0x80
MAX_APDU_DATA = 255
SUCCESS = 0x9000
USER_REJECTED = 0x6985
APP_NOT_OPEN = (0x6d00, 0x6e00, 0x6511)

MESSAGES = {
    'en': {
        'rpc_endpoint': 'RPC endpoint: {}',
        'connecting': 'Connecting to Ledger device...',
        'listing': 'Getting address list...',
        'address_choice': 'Address {index}: {address}',
        'select_address': 'Please select the address you want to use',
        'selected': 'Selected address: {}',
        'recipient': 'Please enter the recipient address',
        'invalid_address': 'Please enter a valid Ethereum address',
        'amount': 'Please enter the amount of ETH to send',
        'invalid_amount': 'Please enter a value greater than 0 (at most 18 decimals)',
        'preparing': 'Preparing transaction...',
        'confirm_on_device': 'Please confirm the transaction on your Ledger device...',
        'signed': 'Transaction signed',
        'signed_tx': 'Signed transaction: {}',
        'confirm_send': 'Do you want to send this transaction?',
        'sent': 'Transaction sent, transaction hash: {}',
        'not_sent': 'Transaction not sent',
        'closed': 'Connection to Ledger device closed',
        'aborted': 'Aborted by user',
        'fatal': 'An error occurred during the process: {}',
    },
    'zh': {
        'rpc_endpoint': 'RPC 节点: {}',
        'connecting': '正在连接 Ledger 设备...',
        'listing': '正在获取地址列表...',
        'address_choice': '地址 {index}: {address}',
        'select_address': '请选择要使用的地址',
        'selected': '已选择地址: {}',
        'recipient': '请输入接收地址',
        'invalid_address': '请输入有效的以太坊地址',
        'amount': '请输入要发送的 ETH 数量',
        'invalid_amount': '请输入大于 0 的数值 (最多 18 位小数)',
        'preparing': '正在准备交易...',
        'confirm_on_device': '请在 Ledger 设备上确认交易...',
        'signed': '交易已签名',
        'signed_tx': '已签名交易: {}',
        'confirm_send': '是否发送此交易?',
        'sent': '交易已发送, 交易哈希: {}',
        'not_sent': '交易未发送',
        'closed': '已断开与 Ledger 设备的连接',
        'aborted': '用户已取消',
        'fatal': '处理过程中发生错误: {}',
    },
}


class WalletException(Exception):
    pass


class DeviceNotFound(WalletException):
    pass


class DeviceBusy(WalletException):
    pass


class DeviceCommunicationError(WalletException):
    pass


class SigningRejected(WalletException):
    pass


class UserAborted(WalletException):
    def __init__(self, message='aborted by user'):
        super().__init__(message)


class NetworkQueryError(WalletException):
    pass


class BroadcastError(WalletException):
    pass


class InvalidInput(WalletException):
    """Rejected user input. Prompt providers show it and ask again."""


@dataclass(frozen=True)
class DerivedAddress:
    index: int
    address: str
    derivation_path: str


@dataclass(frozen=True)
class TransactionRequest:
    recipient: str
    amount_wei: int


@dataclass(frozen=True)
class UnsignedTransaction:
    to: str
    value: int
    gas_price: int
    nonce: int
    chain_id: int
    gas_limit: int = GAS_LIMIT


@dataclass(frozen=True)
class Signature:
    r: str
    s: str
    v: int


class LegacyTransaction(rlp.Serializable):
    fields = [
        ('nonce', big_endian_int),
        ('gas_price', big_endian_int),
        ('gas', big_endian_int),
        ('to', Binary.fixed_length(20, allow_empty=True)),
        ('value', big_endian_int),
        ('data', binary),
        ('v', big_endian_int),
        ('r', big_endian_int),
        ('s', big_endian_int),
    ]


def serialize_transaction(tx: UnsignedTransaction, signature: Optional[Signature] = None) -> str:
    """Return the 0x-prefixed RLP encoding of a legacy transaction.

    Without a signature the EIP-155 signing form is produced: chain id in
    place of v, empty r and s.
    """
    if signature is None:
        v, r, s = tx.chain_id, 0, 0
    else:
        v, r, s = signature.v, int(signature.r, 16), int(signature.s, 16)
    encoded = rlp.encode(LegacyTransaction(
        nonce=tx.nonce,
        gas_price=tx.gas_price,
        gas=tx.gas_limit,
        to=to_canonical_address(tx.to),
        value=tx.value,
        data=b'',
        v=v,
        r=r,
        s=s,
    ))
    return encode_hex(encoded)


def decode_transaction(raw: str) -> Tuple[UnsignedTransaction, Optional[Signature]]:
    decoded = rlp.decode(decode_hex(raw), LegacyTransaction)
    if decoded.r == 0 and decoded.s == 0:
        chain_id, signature = decoded.v, None
    else:
        chain_id = (decoded.v - 35) // 2
        signature = Signature(r=hex(decoded.r), s=hex(decoded.s), v=decoded.v)
    tx = UnsignedTransaction(
        to=to_checksum_address(decoded.to),
        value=decoded.value,
        gas_price=decoded.gas_price,
        nonce=decoded.nonce,
        chain_id=chain_id,
        gas_limit=decoded.gas,
    )
    return tx, signature


def expand_v(v: int, chain_id: int) -> int:
    # The device only returns the low byte of chain_id * 2 + 35 + parity.
    base = chain_id * 2 + 35
    parity = (v - base) % 256
    if parity > 1:
        return v
    return base + parity


def parse_ether(value: str) -> int:
    """Convert a decimal ETH amount to wei without going through floats."""
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValueError('not a number: {!r}'.format(value)) from None
    if not amount.is_finite() or amount <= 0:
        raise ValueError('amount must be greater than 0')
    try:
        with localcontext() as ctx:
            ctx.prec = 999
            ctx.traps[Underflow] = True
            scaled = amount * WEI_PER_ETHER
            if scaled != scaled.to_integral_value():
                raise ValueError('amount is finer than 1 wei')
    except DecimalException as ex:
        raise ValueError('amount out of range: {!r}'.format(value)) from ex
    wei = Web3.to_wei(amount, 'ether')
    if wei <= 0:
        raise ValueError('amount must be at least 1 wei')
    return wei


def encode_bip32_path(path: str) -> bytes:
    elements = [element for element in path.split('/') if element and element != 'm']
    result = len(elements).to_bytes(1, byteorder='big')
    for element in elements:
        hardened = element.endswith("'")
        index = int(element[:-1] if hardened else element)
        if index < 0 or index >= 0x80000000:
            raise WalletException('invalid derivation path component: {}'.format(element))
        if hardened:
            index |= 0x80000000
        result += index.to_bytes(4, byteorder='big')
    return result


class Ledger:
    def __init__(self, transport):
        self.transport = transport
        self._closed = False

    @classmethod
    def connect(cls, debug=False) -> 'Ledger':
        if not HID.enumerate_devices(LEDGER_VENDOR_ID):
            raise DeviceNotFound('no Ledger device found, check it is plugged in and unlocked')
        try:
            transport = Transport(interface='hid', debug=debug)
        except OSError as ex:
            raise DeviceBusy('Ledger device is in use by another application: {}'.format(ex)) from ex
        ledger = cls(transport)
        try:
            logger.debug('Ethereum app version: {}'.format(ledger.get_app_configuration()))
        except WalletException:
            ledger.close()
            raise
        return ledger

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.transport.close()

    def get_app_configuration(self) -> str:
        sw, response = self._exchange(INS_GET_APP_CONFIGURATION)
        self._check('get_app_configuration', sw)
        return '.'.join('{}'.format(b) for b in response[1:4])

    def get_address(self, path: str, confirm=False) -> str:
        if confirm:
            logger.info('Please confirm address on device')
        sw, response = self._exchange(INS_GET_ADDRESS, p1=int(confirm), cdata=encode_bip32_path(path))
        self._check('get_address', sw)

        offset = 1 + response[0]
        length = response[offset]
        address = response[offset + 1:offset + 1 + length].decode('ascii')
        return to_checksum_address('0x' + address)

    def sign_transaction(self, path: str, raw_tx: bytes) -> Tuple[int, str, str]:
        payload = encode_bip32_path(path) + raw_tx
        chunks = [payload[i:i + MAX_APDU_DATA] for i in range(0, len(payload), MAX_APDU_DATA)]
        for i, chunk in enumerate(chunks):
            sw, response = self._exchange(INS_SIGN_TRANSACTION, p1=P1_FIRST if i == 0 else P1_MORE, cdata=chunk)
            self._check('sign_transaction', sw)

        v = response[0]
        return v, response[1:33].hex(), response[33:65].hex()

    def _exchange(self, ins, p1=0, p2=0, cdata=b''):
        try:
            return self.transport.exchange(cla=CLA, ins=ins, p1=p1, p2=p2, cdata=cdata)
        except OSError as ex:
            raise DeviceCommunicationError('device I/O error: {}'.format(ex)) from ex

    @staticmethod
    def _check(operation, sw):
        if sw == SUCCESS:
            return
        if sw == USER_REJECTED:
            raise SigningRejected('{} rejected on device'.format(operation))
        if sw in APP_NOT_OPEN:
            raise DeviceCommunicationError('{} error: {:X}, is the Ethereum app open?'.format(operation, sw))
        raise DeviceCommunicationError('{} error: {:X}'.format(operation, sw))


class EthClient:
    def __init__(self, w3: Web3):
        self.w3 = w3

    @classmethod
    def from_url(cls, url: str) -> 'EthClient':
        return cls(Web3(Web3.HTTPProvider(url)))

    def get_transaction_count(self, address: str) -> int:
        return self._query('eth_getTransactionCount', lambda: self.w3.eth.get_transaction_count(address))

    def get_gas_price(self) -> int:
        return self._query('eth_gasPrice', lambda: self.w3.eth.gas_price)

    def get_chain_id(self) -> int:
        return self._query('eth_chainId', lambda: self.w3.eth.chain_id)

    def send_raw_transaction(self, raw: str) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except (Web3Exception, RequestException, ValueError) as ex:
            raise BroadcastError('transaction rejected: {}'.format(ex)) from ex
        return Web3.to_hex(tx_hash)

    @staticmethod
    def _query(method, call):
        try:
            return call()
        except (Web3Exception, RequestException, ValueError) as ex:
            raise NetworkQueryError('{} failed: {}'.format(method, ex)) from ex


T = TypeVar('T')


class Prompter(Protocol):
    def select(self, message: str, options: Sequence[Tuple[str, str]]) -> str:
        ...

    def text(self, message: str, parse: Callable[[str], T]) -> T:
        ...

    def confirm(self, message: str, default: bool = False) -> bool:
        ...


class ClickPrompter:
    """Console prompts. Ctrl-C or end of input raise UserAborted."""

    def select(self, message, options):
        for _, label in options:
            click.echo('  {}'.format(label))
        keys = [key for key, _ in options]
        try:
            return click.prompt(message, type=click.Choice(keys))
        except click.Abort:
            raise UserAborted()

    def text(self, message, parse):
        def value_proc(value):
            try:
                return parse(value)
            except InvalidInput as ex:
                raise click.BadParameter(str(ex))

        try:
            return click.prompt(message, value_proc=value_proc)
        except click.Abort:
            raise UserAborted()

    def confirm(self, message, default=False):
        try:
            return click.confirm(message, default=default)
        except click.Abort:
            raise UserAborted()


class State(Enum):
    IDLE = 'idle'
    CONNECTED = 'connected'
    ADDRESSES_LISTED = 'addresses listed'
    ADDRESS_SELECTED = 'address selected'
    DETAILS_ENTERED = 'details entered'
    TRANSACTION_BUILT = 'transaction built'
    SIGNED = 'signed'
    SENT = 'sent'
    DECLINED = 'declined'
    CLOSED = 'closed'


class Wallet:
    def __init__(self, ledger: Ledger, client: EthClient, prompter: Prompter, text: dict):
        self.ledger = ledger
        self.client = client
        self.prompter = prompter
        self.text = text
        self.state = State.IDLE
        self._advance(State.CONNECTED)

    def _advance(self, state: State):
        logger.debug('State: {} -> {}'.format(self.state.value, state.value))
        self.state = state

    def list_addresses(self, start_index=0, end_index=4) -> List[DerivedAddress]:
        if start_index < 0 or end_index < start_index:
            raise WalletException('invalid address index range {}..{}'.format(start_index, end_index))
        addresses = []
        for index in range(start_index, end_index + 1):
            path = DERIVATION_PATH.format(index)
            addresses.append(DerivedAddress(index=index, address=self.ledger.get_address(path), derivation_path=path))
        self._advance(State.ADDRESSES_LISTED)
        return addresses

    def select_one(self, candidates: Sequence[DerivedAddress]) -> DerivedAddress:
        options = [(str(c.index), self.text['address_choice'].format(index=c.index, address=c.address))
                   for c in candidates]
        key = self.prompter.select(self.text['select_address'], options)
        selected = next(c for c in candidates if str(c.index) == key)
        self._advance(State.ADDRESS_SELECTED)
        return selected

    def prompt_recipient(self) -> str:
        return self.prompter.text(self.text['recipient'], self._parse_recipient)

    def prompt_amount(self) -> int:
        return self.prompter.text(self.text['amount'], self._parse_amount)

    def _parse_recipient(self, value):
        if not ADDRESS_RE.fullmatch(value):
            raise InvalidInput(self.text['invalid_address'])
        return value

    def _parse_amount(self, value):
        try:
            return parse_ether(value)
        except ValueError as ex:
            raise InvalidInput(self.text['invalid_amount']) from ex

    def prompt_details(self) -> TransactionRequest:
        request = TransactionRequest(recipient=self.prompt_recipient(), amount_wei=self.prompt_amount())
        self._advance(State.DETAILS_ENTERED)
        return request

    def build_transaction(self, sender: DerivedAddress, request: TransactionRequest) -> UnsignedTransaction:
        logger.info(self.text['preparing'])
        nonce = self.client.get_transaction_count(sender.address)
        gas_price = self.client.get_gas_price()
        chain_id = self.client.get_chain_id()
        tx = UnsignedTransaction(
            to=to_checksum_address(request.recipient),
            value=request.amount_wei,
            gas_price=gas_price,
            nonce=nonce,
            chain_id=chain_id,
        )
        logger.debug('Unsigned transaction fields: {}'.format(tx))
        self._advance(State.TRANSACTION_BUILT)
        return tx

    def sign(self, derivation_path: str, tx: UnsignedTransaction) -> Signature:
        unsigned = serialize_transaction(tx)
        logger.debug('Unsigned transaction: {}'.format(unsigned))
        logger.info(self.text['confirm_on_device'])
        v, r, s = self.ledger.sign_transaction(derivation_path, bytes.fromhex(remove_0x_prefix(unsigned)))
        return Signature(r='0x' + r, s='0x' + s, v=expand_v(v, tx.chain_id))

    def confirm_and_send(self, signed: str) -> Optional[str]:
        if not self.prompter.confirm(self.text['confirm_send'], default=False):
            logger.info(self.text['not_sent'])
            self._advance(State.DECLINED)
            return None
        tx_hash = self.client.send_raw_transaction(signed)
        logger.info(self.text['sent'].format(tx_hash))
        self._advance(State.SENT)
        return tx_hash

    def run(self, start_index=0, end_index=4) -> Optional[str]:
        """Walk the whole signing flow once. The ledger is closed on every exit path."""
        try:
            logger.info(self.text['listing'])
            addresses = self.list_addresses(start_index, end_index)
            selected = self.select_one(addresses)
            logger.info(self.text['selected'].format(selected.address))

            request = self.prompt_details()
            tx = self.build_transaction(selected, request)

            signature = self.sign(selected.derivation_path, tx)
            signed = serialize_transaction(tx, signature)
            self._advance(State.SIGNED)
            logger.info(self.text['signed'])
            logger.info(self.text['signed_tx'].format(signed))

            return self.confirm_and_send(signed)
        finally:
            self.ledger.close()
            self._advance(State.CLOSED)
            logger.info(self.text['closed'])


class ArgParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_help()
        sys.stderr.write('error: %s\n' % message)
        sys.exit(2)


def build_parser():
    parser = ArgParser(description='Sign an Ethereum transfer with a Ledger device')
    parser.add_argument('-u', '--url', default=DEFAULT_RPC_URL, help='JSON-RPC endpoint (default {})'.format(DEFAULT_RPC_URL))
    parser.add_argument('-l', '--lang', default='en', choices=sorted(MESSAGES), help='Message language (default en)')
    parser.add_argument('--first', default=0, type=int, help='First address index to list (default 0)')
    parser.add_argument('--last', default=4, type=int, help='Last address index to list (default 4)')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug logs')
    return parser


def setup_logging(debug=False):
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(logging.StreamHandler(sys.stdout))
    handler = logging.handlers.RotatingFileHandler(filename=LOG_FILE, maxBytes=1000000, backupCount=2, encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(asctime)s;%(levelname)s;%(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(handler)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)
    text = MESSAGES[args.lang]

    try:
        if args.first < 0 or args.last < args.first:
            raise WalletException('address indexes must satisfy 0 <= first <= last')
        logger.info(text['rpc_endpoint'].format(args.url))
        client = EthClient.from_url(args.url)
        logger.info(text['connecting'])
        ledger = Ledger.connect(debug=args.debug)
        Wallet(ledger, client, ClickPrompter(), text).run(args.first, args.last)
    except (UserAborted, KeyboardInterrupt):
        logger.warning(text['aborted'])
        return 1
    except WalletException as ex:
        logger.error(text['fatal'].format(ex))
        return 1
    except Exception as ex:
        logger.error(text['fatal'].format(ex), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
