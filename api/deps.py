"""API dependencies and shared response helpers."""
from typing import Any, Dict, Optional

from fastapi import Request

from purchases import PurchaseReceipt

from .services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def copied_item_body(item, path: Optional[str]) -> Optional[Dict[str, Any]]:
    if item is None:
        return None
    return {'id': item.id, 'name': item.name, 'path': path}


def receipt_body(receipt: PurchaseReceipt, message: str) -> Dict[str, Any]:
    """Response body for a completed or degraded purchase."""
    payment = None
    if receipt.payment is not None:
        payment = {
            'transaction_hash': receipt.payment.transaction_hash,
            'network': receipt.payment.network,
            'payer': receipt.payment.payer_address,
        }
    if receipt.warnings:
        message = f"{message} with warnings"
    return {
        'transaction': receipt.transaction,
        'copied_item': copied_item_body(receipt.copied_item, receipt.copied_path),
        'payment_details': payment,
        'affiliate_commission': receipt.affiliate_commission,
        'access_granted': receipt.access_granted,
        'state': receipt.state.value,
        'warnings': receipt.warnings,
        'message': message
    }
