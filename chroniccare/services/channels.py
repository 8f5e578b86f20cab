"""Delivery transports for the sms, email and push channels."""

import asyncio
import re
from typing import Any

import boto3
import structlog
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from email_validator import EmailNotValidError, validate_email
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from chroniccare.config import Settings
from chroniccare.schemas.notifications import NotificationChannel
from chroniccare.services.notification_templates import RenderedMessage

logger = structlog.get_logger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")

RETRYABLE_AWS_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "ServiceUnavailable",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "InternalFailure",
}

NON_RETRYABLE_CODES = {
    "INVALID_PHONE_NUMBER",
    "INVALID_EMAIL",
    "INVALID_DEVICE_TOKEN",
    "PATIENT_OPTED_OUT",
    "INVALID_NOTIFICATION_TYPE",
    "NO_DELIVERY_CHANNEL",
}


class ChannelError(Exception):
    """Delivery failure reported by a transport."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        self.retryable = code not in NON_RETRYABLE_CODES if retryable is None else retryable
        super().__init__(message)


def classify_client_error(error: ClientError) -> ChannelError:
    """Map an AWS error response onto a retryable or permanent failure."""
    code = error.response.get("Error", {}).get("Code", "Unknown")
    message = error.response.get("Error", {}).get("Message", str(error))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in RETRYABLE_AWS_CODES:
        return ChannelError(code, message, retryable=True)
    if status is not None and 400 <= status < 500:
        return ChannelError(code, message, retryable=False)
    return ChannelError(code, message, retryable=True)


def classify_firebase_error(error: firebase_exceptions.FirebaseError) -> ChannelError:
    """Map an FCM error onto a retryable or permanent failure."""
    if isinstance(
        error,
        (
            messaging.UnregisteredError,
            messaging.SenderIdMismatchError,
            firebase_exceptions.InvalidArgumentError,
            firebase_exceptions.NotFoundError,
        ),
    ):
        return ChannelError("INVALID_DEVICE_TOKEN", str(error), retryable=False)

    response = getattr(error, "http_response", None)
    status = getattr(response, "status_code", None)
    if status is not None and 400 <= status < 500 and status != 429:
        return ChannelError(str(error.code), str(error), retryable=False)
    return ChannelError(str(error.code), str(error), retryable=True)


class ChannelTransport:
    """
    Base class for a delivery channel.

    Subclasses implement ``_send`` as a blocking SDK call; ``deliver`` runs it
    in a worker thread under a timeout.
    """

    channel: NotificationChannel
    contact_keys: tuple[str, ...] = ()

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    def address(self, contact_info: dict[str, Any] | None) -> str | None:
        """Recipient address for this channel, or None when not reachable."""
        for key in self.contact_keys:
            value = (contact_info or {}).get(key)
            if value:
                return str(value)
        return None

    def _send(self, address: str, message: RenderedMessage) -> dict[str, Any]:
        raise NotImplementedError

    async def deliver(self, address: str, message: RenderedMessage) -> dict[str, Any]:
        """
        Send a rendered message.

        Returns:
            Transport metadata (message id, provider response)

        Raises:
            ChannelError: On any delivery failure
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send, address, message),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ChannelError("TIMEOUT", f"{self.channel.value} send timed out", retryable=True)
        except ChannelError:
            raise
        except ClientError as e:
            raise classify_client_error(e)
        except firebase_exceptions.FirebaseError as e:
            raise classify_firebase_error(e)
        except BotoCoreError as e:
            raise ChannelError("TRANSPORT_ERROR", str(e), retryable=True)
        except Exception as e:
            raise ChannelError("TRANSPORT_ERROR", f"{type(e).__name__}: {e}", retryable=True)


class SnsSmsTransport(ChannelTransport):
    """SMS through Amazon SNS."""

    channel = NotificationChannel.SMS
    contact_keys = ("phone", "mobile", "phone_number")

    def __init__(self, client: BaseClient, sender_id: str | None = None, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.client = client
        self.sender_id = sender_id

    def _send(self, address: str, message: RenderedMessage) -> dict[str, Any]:
        if not E164_PATTERN.match(address):
            raise ChannelError("INVALID_PHONE_NUMBER", f"Not an E.164 phone number: {address}")

        attributes = {"AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"}}
        if self.sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {"DataType": "String", "StringValue": self.sender_id}

        response = self.client.publish(
            PhoneNumber=address,
            Message=message.sms,
            MessageAttributes=attributes,
        )
        return {"provider": "sns", "message_id": response.get("MessageId")}


class SesEmailTransport(ChannelTransport):
    """Email through Amazon SES."""

    channel = NotificationChannel.EMAIL
    contact_keys = ("email",)

    def __init__(self, client: BaseClient, sender: str, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.client = client
        self.sender = sender

    def _send(self, address: str, message: RenderedMessage) -> dict[str, Any]:
        try:
            address = validate_email(address, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ChannelError("INVALID_EMAIL", str(e))

        response = self.client.send_email(
            Source=self.sender,
            Destination={"ToAddresses": [address]},
            Message={
                "Subject": {"Data": message.email_subject, "Charset": "UTF-8"},
                "Body": {
                    "Html": {"Data": message.email_body, "Charset": "UTF-8"},
                    "Text": {"Data": message.sms, "Charset": "UTF-8"},
                },
            },
        )
        return {"provider": "ses", "message_id": response.get("MessageId")}


class FcmPushTransport(ChannelTransport):
    """Push through Firebase Cloud Messaging."""

    channel = NotificationChannel.PUSH
    contact_keys = ("fcm_token", "device_token", "push_token")

    def __init__(self, app: Any = None, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.app = app

    def _send(self, address: str, message: RenderedMessage) -> dict[str, Any]:
        fcm_message = messaging.Message(
            token=address,
            notification=messaging.Notification(title=message.push_title, body=message.push_body),
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default"))),
        )
        message_id = messaging.send(fcm_message, app=self.app)
        return {"provider": "fcm", "message_id": message_id}


def build_transports(settings: Settings, firebase_app: Any = None) -> dict[NotificationChannel, ChannelTransport]:
    """
    Transports for every configured channel.

    Push is only available when a Firebase app has been initialised.
    """
    timeout = settings.channel_timeout_seconds
    transports: dict[NotificationChannel, ChannelTransport] = {
        NotificationChannel.SMS: SnsSmsTransport(
            boto3.client("sns", region_name=settings.aws_region),
            sender_id=settings.sns_sender_id,
            timeout_seconds=timeout,
        ),
        NotificationChannel.EMAIL: SesEmailTransport(
            boto3.client("ses", region_name=settings.aws_region),
            sender=settings.ses_sender_email,
            timeout_seconds=timeout,
        ),
    }
    if firebase_app is not None:
        transports[NotificationChannel.PUSH] = FcmPushTransport(firebase_app, timeout_seconds=timeout)
    else:
        logger.warning("push_channel_disabled", reason="firebase_not_initialized")
    return transports
