"""Tests for the delivery transports."""

import time
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from chroniccare.config import settings
from chroniccare.schemas.notifications import NotificationChannel
from chroniccare.services.channels import (
    ChannelError,
    ChannelTransport,
    SesEmailTransport,
    SnsSmsTransport,
    build_transports,
    classify_client_error,
    classify_firebase_error,
)
from chroniccare.services.notification_templates import RenderedMessage

MESSAGE = RenderedMessage(
    sms="Reminder: your appointment is tomorrow.",
    email_subject="Reminder",
    email_body="<p>Reminder</p>",
    push_title="Upcoming appointment",
)


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Publish",
    )


@pytest.mark.parametrize(
    ("code", "status", "retryable"),
    [
        ("Throttling", 400, True),
        ("InvalidParameter", 400, False),
        ("OptedOut", 403, False),
        ("InternalError", 500, True),
        ("Unknown", 503, True),
    ],
)
def test_classify_client_error(code, status, retryable):
    """Test AWS errors split into retryable and permanent failures."""
    error = classify_client_error(_client_error(code, status))

    assert error.code == code
    assert error.retryable is retryable


def test_classify_firebase_error():
    """Test stale device tokens are permanent and outages are retried."""
    stale = classify_firebase_error(messaging.UnregisteredError("Token is not registered"))
    outage = classify_firebase_error(firebase_exceptions.UnavailableError("Service unavailable"))

    assert stale.code == "INVALID_DEVICE_TOKEN"
    assert stale.retryable is False
    assert outage.retryable is True


def test_channel_error_default_retryability():
    """Test known permanent codes are not retried unless stated otherwise."""
    assert ChannelError("INVALID_EMAIL", "bad").retryable is False
    assert ChannelError("TIMEOUT", "slow").retryable is True
    assert ChannelError("INVALID_EMAIL", "bad", retryable=True).retryable is True


def test_address_lookup():
    """Test contact keys are tried in order."""
    transport = SnsSmsTransport(MagicMock())

    assert transport.address({"mobile": "+15555550101", "phone_number": "+15555550102"}) == "+15555550101"
    assert transport.address({"email": "ada@example.com"}) is None
    assert transport.address(None) is None


@pytest.mark.asyncio
async def test_sms_delivery():
    """Test an SMS is published through SNS as transactional."""
    client = MagicMock()
    client.publish.return_value = {"MessageId": "sns-123"}
    transport = SnsSmsTransport(client, sender_id="CLINIC")

    metadata = await transport.deliver("+15555550100", MESSAGE)

    assert metadata == {"provider": "sns", "message_id": "sns-123"}
    kwargs = client.publish.call_args.kwargs
    assert kwargs["PhoneNumber"] == "+15555550100"
    assert kwargs["Message"] == MESSAGE.sms
    assert kwargs["MessageAttributes"]["AWS.SNS.SMS.SenderID"]["StringValue"] == "CLINIC"


@pytest.mark.asyncio
async def test_sms_rejects_invalid_number():
    """Test a number that is not E.164 fails without calling SNS."""
    client = MagicMock()
    transport = SnsSmsTransport(client)

    with pytest.raises(ChannelError) as exc_info:
        await transport.deliver("555-0100", MESSAGE)

    assert exc_info.value.code == "INVALID_PHONE_NUMBER"
    assert exc_info.value.retryable is False
    client.publish.assert_not_called()


@pytest.mark.asyncio
async def test_sms_provider_error_is_classified():
    """Test SDK errors are converted to channel errors."""
    client = MagicMock()
    client.publish.side_effect = _client_error("Throttling", 400)
    transport = SnsSmsTransport(client)

    with pytest.raises(ChannelError) as exc_info:
        await transport.deliver("+15555550100", MESSAGE)

    assert exc_info.value.code == "Throttling"
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_email_delivery_and_validation():
    """Test SES receives both bodies and invalid addresses are rejected."""
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "ses-1"}
    transport = SesEmailTransport(client, sender="noreply@example.com")

    metadata = await transport.deliver("ada@example.com", MESSAGE)

    assert metadata["message_id"] == "ses-1"
    sent = client.send_email.call_args.kwargs
    assert sent["Destination"] == {"ToAddresses": ["ada@example.com"]}
    assert sent["Message"]["Body"]["Html"]["Data"] == MESSAGE.email_body

    with pytest.raises(ChannelError) as exc_info:
        await transport.deliver("not-an-email", MESSAGE)
    assert exc_info.value.code == "INVALID_EMAIL"


@pytest.mark.asyncio
async def test_slow_send_times_out():
    """Test a hanging provider call becomes a retryable timeout."""

    class SlowTransport(ChannelTransport):
        channel = NotificationChannel.SMS

        def _send(self, address, message):
            time.sleep(0.2)
            return {}

    with pytest.raises(ChannelError) as exc_info:
        await SlowTransport(timeout_seconds=0.05).deliver("+15555550100", MESSAGE)

    assert exc_info.value.code == "TIMEOUT"
    assert exc_info.value.retryable is True


def test_build_transports_without_firebase():
    """Test push is left out when Firebase is not initialised."""
    with patch("chroniccare.services.channels.boto3.client") as mock_client:
        transports = build_transports(settings)

    assert set(transports) == {NotificationChannel.SMS, NotificationChannel.EMAIL}
    assert {call.args[0] for call in mock_client.call_args_list} == {"sns", "ses"}

    with patch("chroniccare.services.channels.boto3.client"):
        assert NotificationChannel.PUSH in build_transports(settings, firebase_app=MagicMock())
