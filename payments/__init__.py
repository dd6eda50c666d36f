"""Payment-proof verification.

A buyer pays off-band (the x402 facilitator or their own wallet submits the
USDC transfer) and then presents the settlement response as a header. This
module decodes that assertion and confirms it against the expected amount,
recipient and network before any purchase is recorded. Nothing here moves
funds.
"""
import base64
import binascii
import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional

from ledger.errors import DependencyUnavailableError, InvalidProofError
from ledger.models import PaymentProof
from rpc import RPCError, NodeConnectionError
from rpc.erc20 import normalize_address, to_minor_units
from rpc.usdc import UsdcGateway

logger = logging.getLogger(__name__)

PAYMENT_HEADER = 'x-payment-response'
AFFILIATE_HEADER = 'x-affiliate-code'
X402_VERSION = 1

TX_HASH_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')


def decode_assertion(assertion: str) -> Dict[str, Any]:
    """Decode a payment assertion header.

    Accepts raw JSON or base64-encoded JSON.

    Raises:
        InvalidProofError: If the value is not a JSON object
    """
    text = assertion.strip()
    if not text.startswith('{'):
        try:
            text = base64.b64decode(text, validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise InvalidProofError("Payment assertion is not valid base64 or JSON") from e
    try:
        data = json.loads(text)
    except ValueError as e:
        raise InvalidProofError("Payment assertion is not valid JSON") from e
    if not isinstance(data, dict):
        raise InvalidProofError("Payment assertion must be a JSON object")
    return data


def build_payment_requirements(
    amount: Decimal,
    pay_to: str,
    resource: str,
    description: str,
    network: str,
    asset: str,
    decimals: int = 6,
    error: str = "Payment required"
) -> Dict[str, Any]:
    """Build the x402 body returned with HTTP 402."""
    return {
        'x402Version': X402_VERSION,
        'error': error,
        'accepts': [{
            'scheme': 'exact',
            'network': network,
            'maxAmountRequired': str(to_minor_units(amount, decimals)),
            'payTo': pay_to,
            'asset': asset,
            'resource': resource,
            'description': description,
            'mimeType': 'application/json',
        }]
    }


class PaymentVerifier:
    """Validates payment assertions against an expected transfer.

    With ``verify_onchain`` the referenced transaction's receipt is fetched
    and its USDC Transfer logs must show at least ``amount`` reaching
    ``recipient`` (from the asserted payer, when one is given). Without it
    the facilitator's settlement response is trusted as-is, apart from the
    network and any amount or recipient it states.
    """

    def __init__(
        self,
        gateway: Optional[UsdcGateway] = None,
        network: str = 'base-sepolia',
        verify_onchain: bool = True
    ):
        if verify_onchain and gateway is None:
            raise ValueError("On-chain verification requires a USDC gateway")
        self.gateway = gateway
        self.network = network
        self.verify_onchain = verify_onchain

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], gateway: Optional[UsdcGateway] = None) -> 'PaymentVerifier':
        return cls(
            gateway=gateway,
            network=settings['chain_network'],
            verify_onchain=settings['verify_onchain']
        )

    async def verify(
        self,
        assertion: Optional[str],
        amount: Decimal,
        recipient: str,
        network: Optional[str] = None
    ) -> PaymentProof:
        """Verify a payment assertion.

        Returns:
            PaymentProof. ``success`` is False when the transfer itself failed;
            callers must not treat that as paid.

        Raises:
            InvalidProofError: Absent, malformed or mismatching assertion
            DependencyUnavailableError: Chain RPC unreachable
        """
        if not assertion:
            raise InvalidProofError("Payment assertion missing")

        network = network or self.network
        data = decode_assertion(assertion)

        tx_hash = data.get('transaction') or data.get('transactionHash')
        if not isinstance(tx_hash, str) or not TX_HASH_PATTERN.match(tx_hash):
            raise InvalidProofError("Payment assertion has no valid transaction hash")
        tx_hash = tx_hash.lower()

        claimed_network = data.get('network')
        if claimed_network != network:
            raise InvalidProofError(
                f"Payment made on {claimed_network!r}, expected {network!r}",
                transaction_hash=tx_hash
            )

        payer = data.get('payer')
        if payer is not None:
            try:
                payer = normalize_address(payer)
            except ValueError as e:
                raise InvalidProofError("Payment assertion has an invalid payer address") from e

        try:
            recipient = normalize_address(recipient)
        except ValueError as e:
            raise InvalidProofError(f"Seller wallet {recipient!r} is not a valid address") from e

        success = data.get('success') is True
        self._check_stated_terms(data, amount, recipient, tx_hash)

        proof = PaymentProof(
            transaction_hash=tx_hash,
            network=network,
            payer_address=payer,
            success=success,
            amount=amount,
            recipient_address=recipient,
            raw=assertion
        )

        if not success or not self.verify_onchain:
            logger.debug(f"Payment {tx_hash} accepted from assertion (success={success})")
            return proof

        return await self._verify_onchain(proof, amount, recipient)

    @staticmethod
    def _check_stated_terms(data: Dict[str, Any], amount: Decimal, recipient: str, tx_hash: str) -> None:
        stated_to = data.get('payTo') or data.get('recipient')
        if stated_to is not None and str(stated_to).lower() != recipient:
            raise InvalidProofError("Payment sent to the wrong recipient", transaction_hash=tx_hash)

        stated_amount = data.get('amount')
        if stated_amount is not None:
            try:
                paid = Decimal(str(stated_amount))
            except ArithmeticError as e:
                raise InvalidProofError("Payment assertion has an invalid amount") from e
            if paid < amount:
                raise InvalidProofError(
                    f"Payment of {paid} is less than the price {amount}",
                    transaction_hash=tx_hash
                )

    async def _verify_onchain(self, proof: PaymentProof, amount: Decimal, recipient: str) -> PaymentProof:
        try:
            succeeded, transfers = await self.gateway.get_transfers(proof.transaction_hash)
        except NodeConnectionError as e:
            logger.error(f"Chain RPC unavailable while verifying {proof.transaction_hash}: {e}")
            raise DependencyUnavailableError("Payment verification unavailable, retry later") from e
        except RPCError as e:
            raise InvalidProofError(
                f"Payment transaction could not be read: {e}",
                transaction_hash=proof.transaction_hash
            ) from e

        if succeeded is None:
            raise InvalidProofError(
                "Payment transaction is not confirmed",
                transaction_hash=proof.transaction_hash
            )
        if not succeeded:
            logger.warning(f"Payment transaction {proof.transaction_hash} reverted on chain")
            return proof.model_copy(update={'success': False})

        paid = sum(
            (t['value'] for t in transfers
             if t['to'] == recipient and (proof.payer_address is None or t['from'] == proof.payer_address)),
            Decimal('0')
        )
        if paid < amount:
            raise InvalidProofError(
                f"Transaction {proof.transaction_hash} pays {paid} USDC to {recipient}, expected {amount}",
                transaction_hash=proof.transaction_hash
            )

        payer = proof.payer_address
        if payer is None:
            payer = next(t['from'] for t in transfers if t['to'] == recipient)
        logger.debug(f"Payment {proof.transaction_hash} confirmed on chain: {paid} USDC")
        return proof.model_copy(update={'payer_address': payer, 'amount': paid})
