"""
Payment Gateway Module (PhonePe)

Signature verification and normalization of PhonePe callbacks, an outbound
client for checkout creation and status checks, and the callback handler that
feeds confirmed payments into the reconciler.

Checksum scheme:
    X-VERIFY = sha256_hex(base64_payload + endpoint + salt_key) + "###" + salt_index
Callbacks are signed without an endpoint component.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union
import base64
import binascii
import hashlib
import hmac
import json
import logging

import requests

from .currency import Money, Currency
from .errors import LendingError, SignatureInvalidError, ValidationError
from .loans import LoanRepository, PaymentMethod, PaymentOrder, PaymentOrderStatus
from .reconciliation import PaymentReconciler, ReconciliationOutcome
from .storage import StorageInterface


logger = logging.getLogger("lending.gateway")

PHONEPE_BASE_URLS = {
    "production": "https://api.phonepe.com/apis/hermes",
    "sandbox": "https://api-preprod.phonepe.com/apis/pg-sandbox",
}
PAY_ENDPOINT = "/pg/v1/pay"
SUCCESS_CODE = "PAYMENT_SUCCESS"


class PhonePeSigner:
    """Computes and checks X-VERIFY checksums"""

    def __init__(self, salt_key: str, salt_index: str = "1"):
        self.salt_key = salt_key
        self.salt_index = str(salt_index)

    def generate_checksum(self, payload: str, endpoint: str = "") -> str:
        digest = hashlib.sha256((payload + endpoint + self.salt_key).encode("utf-8")).hexdigest()
        return f"{digest}###{self.salt_index}"

    def verify_signature(self, base64_payload: str, x_verify: Optional[str]) -> None:
        """
        Raises:
            SignatureInvalidError: missing/malformed header, wrong salt index
                or hash mismatch.
        """
        if not x_verify or "###" not in x_verify:
            raise SignatureInvalidError("Missing or malformed X-VERIFY header")
        received_hash, _, salt_index = x_verify.rpartition("###")
        if salt_index != self.salt_index:
            raise SignatureInvalidError("X-VERIFY salt index mismatch")
        expected = hashlib.sha256((base64_payload + self.salt_key).encode("utf-8")).hexdigest()
        if not hmac.compare_digest(expected, received_hash.lower()):
            raise SignatureInvalidError("X-VERIFY checksum mismatch")


@dataclass
class PaymentConfirmed:
    merchant_transaction_id: str
    gateway_transaction_id: Optional[str]
    amount: Money
    code: str = SUCCESS_CODE


@dataclass
class PaymentFailed:
    merchant_transaction_id: str
    code: str
    gateway_transaction_id: Optional[str] = None
    message: str = ""


GatewayEvent = Union[PaymentConfirmed, PaymentFailed]


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def parse_callback(signer: PhonePeSigner, body: Dict[str, Any], headers: Mapping[str, str],
                   currency: Currency = Currency.INR) -> GatewayEvent:
    """
    Verify and decode a PhonePe callback.

    The signature is checked before the payload is decoded; a callback
    failing verification never reaches business fields.
    """
    encoded = body.get("response") if isinstance(body, dict) else None
    if not encoded or not isinstance(encoded, str):
        raise ValidationError("Callback body has no 'response' payload")

    signer.verify_signature(encoded, _header(headers, "X-VERIFY"))

    try:
        payload = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError("Callback payload is not base64-encoded JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Callback payload is not a JSON object")

    data = payload.get("data") or {}
    merchant_transaction_id = data.get("merchantTransactionId")
    if not merchant_transaction_id:
        raise ValidationError("Callback payload has no merchantTransactionId")

    code = payload.get("code", "")
    if payload.get("success") and code == SUCCESS_CODE:
        amount = data.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Callback amount must be a positive integer in paise",
                                  {"amount": amount})
        return PaymentConfirmed(
            merchant_transaction_id=merchant_transaction_id,
            gateway_transaction_id=data.get("transactionId"),
            amount=Money.from_minor_units(amount, currency),
            code=code,
        )
    return PaymentFailed(
        merchant_transaction_id=merchant_transaction_id,
        code=code or "UNKNOWN",
        gateway_transaction_id=data.get("transactionId"),
        message=payload.get("message", ""),
    )


class PhonePeClient:
    """Outbound PhonePe calls; mock mode skips the network entirely"""

    def __init__(self, merchant_id: str, signer: PhonePeSigner, env: str = "sandbox",
                 mock_mode: bool = False, timeout: float = 10.0,
                 frontend_url: str = "http://localhost:3000",
                 api_base_url: str = "http://localhost:8090",
                 session: Optional[requests.Session] = None):
        self.merchant_id = merchant_id
        self.signer = signer
        self.base_url = PHONEPE_BASE_URLS.get(env, PHONEPE_BASE_URLS["sandbox"])
        self.mock_mode = mock_mode
        self.timeout = timeout
        self.frontend_url = frontend_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")
        self.session = session or requests.Session()

    def create_payment(self, order: PaymentOrder, mobile_number: Optional[str] = None) -> str:
        """Start a checkout for the order and return the redirect URL"""
        txn_id = order.merchant_transaction_id
        if self.mock_mode:
            logger.info(f"Mock gateway checkout for {txn_id}")
            return f"{self.frontend_url}/payments/mock-gateway?txnId={txn_id}&amount={order.expected_amount.amount}"

        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": txn_id,
            "merchantUserId": order.customer_id,
            "amount": order.expected_amount.to_minor_units(),
            "redirectUrl": f"{self.frontend_url}/payments/callback?txnId={txn_id}",
            "redirectMode": "POST",
            "callbackUrl": f"{self.api_base_url}/payments/phonepe/webhook",
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        if mobile_number:
            payload["mobileNumber"] = mobile_number

        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        response = self.session.post(
            f"{self.base_url}{PAY_ENDPOINT}",
            json={"request": encoded},
            headers={"Content-Type": "application/json",
                     "X-VERIFY": self.signer.generate_checksum(encoded, PAY_ENDPOINT)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        if not body.get("success"):
            raise LendingError("Gateway order creation failed", {"response": body})
        return body["data"]["instrumentResponse"]["redirectInfo"]["url"]

    def check_status(self, merchant_transaction_id: str) -> Dict[str, Any]:
        endpoint = f"/pg/v1/status/{self.merchant_id}/{merchant_transaction_id}"
        if self.mock_mode:
            return {"success": True, "code": SUCCESS_CODE,
                    "data": {"merchantTransactionId": merchant_transaction_id,
                             "transactionId": f"MOCK_{merchant_transaction_id}",
                             "state": "COMPLETED"}}
        response = self.session.get(
            f"{self.base_url}{endpoint}",
            headers={"Content-Type": "application/json",
                     "X-VERIFY": self.signer.generate_checksum("", endpoint),
                     "X-MERCHANT-ID": self.merchant_id},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()


@dataclass
class CallbackAck:
    """What the webhook endpoint reports back to the gateway"""
    acknowledged: bool
    merchant_transaction_id: str
    status: str
    outcome: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'acknowledged': self.acknowledged,
            'merchant_transaction_id': self.merchant_transaction_id,
            'status': self.status,
            'outcome': self.outcome,
        }


class PaymentCallbackHandler:
    """verify -> decode -> resolve order -> reconcile"""

    def __init__(self, storage: StorageInterface, signer: PhonePeSigner, reconciler: PaymentReconciler):
        self.storage = storage
        self.signer = signer
        self.reconciler = reconciler
        self.loans = LoanRepository(storage)

    def handle(self, body: Dict[str, Any], headers: Mapping[str, str]) -> CallbackAck:
        try:
            event = parse_callback(self.signer, body, headers)
        except SignatureInvalidError as e:
            logger.warning(f"Rejected gateway callback: {e.message}")
            raise

        order = self.loans.find_order(event.merchant_transaction_id)
        if order is None:
            logger.error(f"Callback for unknown payment order {event.merchant_transaction_id}")
            return CallbackAck(True, event.merchant_transaction_id, "unknown_order")

        if isinstance(event, PaymentFailed):
            self._mark_order(order.id, PaymentOrderStatus.FAILED, event.gateway_transaction_id)
            logger.warning(f"Payment {order.id} failed at gateway: {event.code}")
            return CallbackAck(True, order.id, "failed")

        if event.amount != order.expected_amount:
            logger.error(f"Gateway amount {event.amount} differs from order {order.id} "
                         f"expected {order.expected_amount}")

        result = self.reconciler.apply_payment(
            loan_id=order.loan_id,
            external_reference=order.id,
            confirmed_amount=event.amount,
            up_to_installments_count=order.pay_ahead_count,
            payment_method=PaymentMethod.GATEWAY,
            processed_by=order.customer_id,
            installment_amounts=order.frozen_amounts() or None,
        )
        if result.outcome == ReconciliationOutcome.NOTHING_TO_APPLY:
            self._mark_order(order.id, PaymentOrderStatus.UNAPPLIED, event.gateway_transaction_id)
            logger.error(f"Payment {order.id} of {event.amount} captured but could not be applied "
                         f"to its installments; refund required")
            return CallbackAck(True, order.id, "unapplied", result.outcome.value)

        self._mark_order(order.id, PaymentOrderStatus.PAID, event.gateway_transaction_id)
        return CallbackAck(True, order.id, "paid", result.outcome.value)

    def _mark_order(self, order_id: str, status: PaymentOrderStatus,
                    gateway_transaction_id: Optional[str]) -> None:
        with self.storage.atomic():
            order = self.loans.get_order(order_id)
            if order.status == PaymentOrderStatus.PAID:
                return
            order.status = status
            order.gateway_transaction_id = gateway_transaction_id or order.gateway_transaction_id
            order.updated_at = datetime.now(timezone.utc)
            self.loans.save_order(order)
