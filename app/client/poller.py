"""Client-side payment status poller.

Drives the "check your phone" step of the checkout: submit the phone number,
then poll the invoice status with a capped exponential backoff until the
payment settles or the attempt budget runs out. A manual query can be fired
at any time to pull the provider's verdict when the callback is slow.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class PollerState(str, enum.Enum):
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    POLLING = "POLLING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_final(self) -> bool:
        return self in FINAL_STATES


FINAL_STATES = frozenset({PollerState.SUCCESS, PollerState.FAILED, PollerState.CANCELLED, PollerState.TIMEOUT})

_PAYMENT_TO_POLLER = {
    "COMPLETED": PollerState.SUCCESS,
    "FAILED": PollerState.FAILED,
    "CANCELLED": PollerState.CANCELLED,
}


@dataclass(frozen=True)
class PollerConfig:
    initial_delay: float = 5.0
    base_interval: float = 2.0
    factor: float = 1.5
    max_interval: float = 10.0
    max_attempts: int = 12

    def delay_for(self, attempts: int) -> float:
        """Wait before the next check after ``attempts`` checks."""

        return min(self.base_interval * self.factor ** max(attempts - 1, 0), self.max_interval)


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    """Decoded body when it is a JSON object, else ``None`` (proxy pages, empty bodies)."""

    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_message(response: httpx.Response) -> str:
    body = _json_object(response)
    if body is not None:
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"Request failed with status {response.status_code}"


class PaymentPoller:
    """One checkout attempt for one invoice; at most one background task at a time."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        public_invoice_id: str,
        config: PollerConfig | None = None,
        *,
        on_change: Callable[[PollerState, PollerState], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self.public_invoice_id = public_invoice_id
        self.config = config or PollerConfig()
        self._on_change = on_change
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.state = PollerState.IDLE
        self.attempts = 0
        self.checkout_request_id: str | None = None
        self.payment_id: str | None = None
        self.message: str | None = None
        self.error: str | None = None
        self.receipt_number: str | None = None

    # --- state ------------------------------------------------------------
    def _set_state(self, state: PollerState, *, error: str | None = None) -> None:
        previous = self.state
        self.state = state
        if error is not None:
            self.error = error
        if previous != state:
            logger.debug(
                "Payment poller transition",
                extra={"invoice": self.public_invoice_id, "from": previous.value, "to": state.value},
            )
            if self._on_change is not None:
                self._on_change(previous, state)

    def _apply_payment_status(self, status: str | None, desc: str | None = None) -> None:
        target = _PAYMENT_TO_POLLER.get(status or "")
        if target is None:
            return
        if target is PollerState.SUCCESS:
            self._set_state(target)
        else:
            self._set_state(target, error=desc or "Payment was not completed.")

    def _apply_invoice_status(self, data: dict[str, Any]) -> None:
        if data.get("isPaid"):
            latest = data.get("latestPayment") or {}
            self.receipt_number = latest.get("mpesaReceiptNumber") or self.receipt_number
            self._set_state(PollerState.SUCCESS)
            return
        latest = data.get("latestPayment") or {}
        status = latest.get("status")
        # A COMPLETED payment on an unpaid invoice is not success yet.
        if status in ("FAILED", "CANCELLED"):
            self._apply_payment_status(status, latest.get("resultDesc"))

    # --- operations -------------------------------------------------------
    async def submit(self, phone_number: str) -> PollerState:
        """Start the STK push and schedule the first status check."""

        await self._stop_task()
        self.attempts = 0
        self.error = None
        self.checkout_request_id = None
        self._set_state(PollerState.SUBMITTING)
        try:
            response = await self._http.post(
                "/payments/initiate",
                json={"publicInvoiceId": self.public_invoice_id, "phoneNumber": phone_number},
            )
        except httpx.HTTPError as exc:
            logger.warning("Payment initiation request failed", extra={"error": str(exc)})
            self._set_state(PollerState.FAILED, error="Could not reach the server. Please try again.")
            return self.state

        if response.is_error:
            self._set_state(PollerState.FAILED, error=_error_message(response))
            return self.state

        data = _json_object(response)
        if data is None:
            logger.warning("Payment initiation returned an unreadable body", extra={"status_code": response.status_code})
            self._set_state(PollerState.FAILED, error="Unexpected response from the server. Please try again.")
            return self.state
        self.checkout_request_id = data.get("checkoutRequestId")
        self.payment_id = data.get("paymentId")
        self.message = data.get("customerMessage")
        self._set_state(PollerState.POLLING)
        self._task = asyncio.create_task(self._run())
        return self.state

    async def _run(self) -> None:
        await self._sleep(self.config.initial_delay)
        while self.state is PollerState.POLLING:
            self.attempts += 1
            if self.attempts > self.config.max_attempts:
                self._set_state(
                    PollerState.TIMEOUT,
                    error="We did not receive a confirmation in time. Check your M-Pesa messages.",
                )
                return
            await self.check_status()
            if self.state is not PollerState.POLLING:
                return
            await self._sleep(self.config.delay_for(self.attempts))

    async def check_status(self) -> PollerState:
        """One status read; network and server errors leave the state untouched."""

        try:
            response = await self._http.get(f"/invoices/{self.public_invoice_id}/status")
        except httpx.HTTPError as exc:
            logger.info("Status check failed; will retry", extra={"error": str(exc)})
            return self.state
        if response.is_error:
            logger.info("Status check rejected; will retry", extra={"status_code": response.status_code})
            return self.state
        data = _json_object(response)
        if data is None:
            logger.info("Status check returned an unreadable body; will retry", extra={"status_code": response.status_code})
            return self.state
        if self.state is PollerState.POLLING:
            self._apply_invoice_status(data)
        return self.state

    async def query_now(self) -> PollerState:
        """Ask the server to query the provider right away."""

        if not self.checkout_request_id:
            raise RuntimeError("No payment has been submitted yet")
        try:
            response = await self._http.post(
                "/payments/query", json={"checkoutRequestId": self.checkout_request_id}
            )
        except httpx.HTTPError as exc:
            logger.warning("Manual payment query failed", extra={"error": str(exc)})
            self.error = "Could not check the payment status. Please try again."
            return self.state
        if response.is_error:
            self.error = _error_message(response)
            return self.state

        data = _json_object(response)
        if data is None:
            logger.warning("Manual payment query returned an unreadable body", extra={"status_code": response.status_code})
            self.error = "Could not check the payment status. Please try again."
            return self.state
        self.receipt_number = data.get("mpesaReceiptNumber") or self.receipt_number
        if self.state.is_final:
            return self.state
        self._apply_payment_status(data.get("status"), data.get("resultDesc"))
        if self.state.is_final:
            await self._stop_task()
        return self.state

    async def wait(self) -> PollerState:
        """Block until the scheduled polling loop finishes."""

        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        return self.state

    async def _stop_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def cancel(self) -> None:
        """Stop polling and keep the last known state."""

        await self._stop_task()

    async def reset(self) -> None:
        """Stop polling and return to IDLE for a new attempt."""

        await self._stop_task()
        self.attempts = 0
        self.checkout_request_id = None
        self.payment_id = None
        self.message = None
        self.error = None
        self.receipt_number = None
        self._set_state(PollerState.IDLE)

    async def aclose(self) -> None:
        await self._stop_task()

    async def __aenter__(self) -> "PaymentPoller":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["FINAL_STATES", "PaymentPoller", "PollerConfig", "PollerState"]
