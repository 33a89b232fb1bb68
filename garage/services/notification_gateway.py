"""
Notification delivery.

The gateway is an external collaborator: it takes (address, title, body,
metadata) and reports per-recipient success or failure. ``NotificationService``
sits in front of it and removes delivery addresses the gateway reports as
invalid, as a best-effort background task that never delays the send result.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional, Sequence, Set, Tuple
from zoneinfo import ZoneInfo

from garage.models.appointment import Appointment
from garage.services.messages import new_appointment_message
from garage.services.user_directory import UserDirectory
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

logger = logging.getLogger(__name__)

# Gateway error codes meaning "this address will never work again"
# Twilio: 21211 invalid 'To', 21214 not reachable, 21217 invalid format,
# 21610 recipient unsubscribed, 21614 not a mobile number
INVALID_ADDRESS_CODES = {"21211", "21214", "21217", "21610", "21614", "invalid_address"}


@dataclass
class DeliveryResult:
    address: str
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None

    @property
    def invalid_address(self) -> bool:
        return not self.success and self.error_code in INVALID_ADDRESS_CODES


@dataclass
class MulticastResult:
    success_count: int = 0
    failures: List[DeliveryResult] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


class NotificationGateway(ABC):
    """Transport used to reach a single address."""

    @abstractmethod
    async def send_one(
        self, address: str, title: str, body: str, metadata: Optional[Dict[str, str]] = None
    ) -> DeliveryResult:
        """Deliver one message. Recipient-level failures are returned, not raised."""

    async def send_many(
        self,
        addresses: Sequence[str],
        title: str,
        body: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> MulticastResult:
        if not addresses:
            raise ValueError("No addresses provided")

        results = await asyncio.gather(
            *(self.send_one(address, title, body, metadata) for address in addresses),
            return_exceptions=True,
        )

        multicast = MulticastResult()
        for address, result in zip(addresses, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to send to {address}: {result}")
                multicast.failures.append(
                    DeliveryResult(address=address, success=False, reason=str(result))
                )
            elif result.success:
                multicast.success_count += 1
            else:
                multicast.failures.append(result)
        return multicast


class TwilioSMSGateway(NotificationGateway):
    """SMS delivery through the Twilio REST API.

    The Twilio client is blocking, so calls run in the default executor.
    """

    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        self.client = Client(account_sid, auth_token)
        self.from_number = from_number
        logger.info(f"TwilioSMSGateway initialized (from {from_number})")

    async def send_one(
        self, address: str, title: str, body: str, metadata: Optional[Dict[str, str]] = None
    ) -> DeliveryResult:
        text = f"{title}\n{body}"
        if metadata and metadata.get("url"):
            text += f"\n{metadata['url']}"

        loop = asyncio.get_running_loop()
        try:
            message = await loop.run_in_executor(
                None,
                partial(self.client.messages.create, to=address, from_=self.from_number, body=text),
            )
        except TwilioRestException as e:
            logger.warning(f"Twilio rejected message to {address}: {e.code} {e.msg}")
            return DeliveryResult(
                address=address, success=False, error_code=str(e.code), reason=e.msg
            )
        except TwilioException as e:
            logger.error(f"Twilio error sending to {address}: {e}")
            return DeliveryResult(address=address, success=False, reason=str(e))

        logger.info(f"SMS sent to {address}: {message.sid}")
        return DeliveryResult(address=address, success=True, message_id=message.sid)


class InMemoryGateway(NotificationGateway):
    """Records messages instead of sending them.

    Used when no SMS credentials are configured and in tests. ``failures`` maps
    an address to the error code it should fail with; ``delay`` simulates a slow
    transport.
    """

    def __init__(self, failures: Optional[Dict[str, str]] = None, delay: float = 0.0):
        self.failures = dict(failures or {})
        self.delay = delay
        self.slow_addresses: Set[str] = set()
        self.sent: List[Tuple[str, str, str, Dict[str, str]]] = []

    async def send_one(
        self, address: str, title: str, body: str, metadata: Optional[Dict[str, str]] = None
    ) -> DeliveryResult:
        if address in self.slow_addresses:
            await asyncio.sleep(3600)
        elif self.delay:
            await asyncio.sleep(self.delay)

        if address in self.failures:
            code = self.failures[address]
            return DeliveryResult(address=address, success=False, error_code=code, reason=f"simulated {code}")

        self.sent.append((address, title, body, dict(metadata or {})))
        return DeliveryResult(address=address, success=True, message_id=f"mem-{len(self.sent)}")

    def sent_to(self, address: str) -> List[Tuple[str, str, str, Dict[str, str]]]:
        return [message for message in self.sent if message[0] == address]


def build_gateway(settings) -> NotificationGateway:
    """Pick the SMS gateway when credentials are configured, else the in-memory one."""
    if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_PHONE_NUMBER:
        return TwilioSMSGateway(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_PHONE_NUMBER,
        )
    logger.warning("Twilio credentials not set - notifications are recorded in memory only")
    return InMemoryGateway()


class NotificationService:
    """Sends through the gateway and prunes addresses it reports as invalid."""

    def __init__(self, gateway: NotificationGateway, users: UserDirectory, timezone_name: str = "Europe/Paris"):
        self.gateway = gateway
        self.users = users
        self.timezone = ZoneInfo(timezone_name)
        self._cleanup_tasks: Set[asyncio.Task] = set()

    async def send_one(
        self,
        user_id: int,
        address: str,
        title: str,
        body: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> DeliveryResult:
        result = await self.gateway.send_one(address, title, body, metadata)
        if result.invalid_address:
            self._schedule_cleanup([(user_id, address)])
        return result

    async def send_many(
        self,
        recipients: Sequence[Tuple[int, str]],
        title: str,
        body: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> MulticastResult:
        """Send to (user_id, address) pairs."""
        addresses = [address for _, address in recipients]
        result = await self.gateway.send_many(addresses, title, body, metadata)

        logger.info(f"Successfully sent {result.success_count} notifications")

        if result.failures:
            invalid = {failure.address for failure in result.failures if failure.invalid_address}
            for failure in result.failures:
                logger.error(f"Failed to send to {failure.address}: {failure.error_code} {failure.reason}")
            stale = [(user_id, address) for user_id, address in recipients if address in invalid]
            if stale:
                self._schedule_cleanup(stale)

        return result

    async def notify_staff_new_appointment(self, appointment: Appointment) -> Optional[MulticastResult]:
        """Tell admins and agenda managers about a new booking."""
        staff = await self.users.list_staff_recipients()
        recipients = [(user.id, user.phone_number) for user in staff if user.phone_number]

        if not recipients:
            logger.info("No staff users with notifications enabled")
            return None

        logger.info(f"Found {len(recipients)} staff users to notify")
        title, body, metadata = new_appointment_message(appointment, self.timezone)
        return await self.send_many(recipients, title, body, metadata)

    def _schedule_cleanup(self, stale: Sequence[Tuple[int, str]]) -> None:
        task = asyncio.create_task(self._cleanup_invalid_addresses(list(stale)))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _cleanup_invalid_addresses(self, stale: List[Tuple[int, str]]) -> None:
        for user_id, address in stale:
            try:
                await self.users.clear_delivery_address(user_id, address)
            except Exception as e:
                logger.error(f"Failed to clear stale address for user {user_id}: {e}", exc_info=True)
        logger.info(f"Cleaned up {len(stale)} invalid delivery addresses")

    async def drain(self) -> None:
        """Wait for pending address cleanups (shutdown, tests)."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)
