"""ERC-20 encoding helpers for the USDC contract.

Only the two calls the settlement flow needs are covered: balanceOf reads and
Transfer event decoding from transaction receipts.
"""
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List

BALANCE_OF_SELECTOR = '0x70a08231'
TRANSFER_TOPIC = '0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef'


def normalize_address(address: str) -> str:
    """Lower-case a 0x-prefixed 20-byte hex address.

    Raises:
        ValueError: If the value is not a 20-byte hex address
    """
    if not isinstance(address, str):
        raise ValueError(f"Invalid address: {address!r}")
    value = address.lower()
    if not value.startswith('0x') or len(value) != 42:
        raise ValueError(f"Invalid address: {address!r}")
    int(value[2:], 16)
    return value


def encode_balance_of(owner: str) -> str:
    return BALANCE_OF_SELECTOR + normalize_address(owner)[2:].rjust(64, '0')


def decode_uint256(data: str) -> int:
    if not data or data == '0x':
        return 0
    return int(data, 16)


def to_minor_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer minor units, truncating dust."""
    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(Decimal('1'), rounding=ROUND_DOWN)
    return int(scaled)


def from_minor_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def topic_address(topic: str) -> str:
    return '0x' + topic[-40:].lower()


def decode_transfers(receipt: Dict[str, Any], token: str) -> List[Dict[str, Any]]:
    """Extract ERC-20 Transfer events for ``token`` from a transaction receipt.

    Returns:
        List of {'from', 'to', 'value'} with value in minor units
    """
    token = normalize_address(token)
    transfers = []
    for log in receipt.get('logs') or []:
        topics = log.get('topics') or []
        if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue
        if (log.get('address') or '').lower() != token:
            continue
        transfers.append({
            'from': topic_address(topics[1]),
            'to': topic_address(topics[2]),
            'value': decode_uint256(log.get('data', '0x'))
        })
    return transfers
