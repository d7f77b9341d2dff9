"""AWS transports: SES for email, SNS for SMS."""
from __future__ import annotations

from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dripline.core.config import settings
from dripline.core.exceptions import PermanentTransportError, TransientTransportError
from dripline.db.models import Channel
from dripline.services.transport import SendResult, Transport
from dripline.utils.logger import logger

# Error codes that point at the recipient or the message itself.
PERMANENT_SES_CODES = frozenset({"MessageRejected", "InvalidParameterValue"})
PERMANENT_SNS_CODES = frozenset({"InvalidParameter", "InvalidParameterValue", "OptedOut"})


def classify_client_error(exc: ClientError, permanent_codes: frozenset[str], service: str) -> Exception:
    code = exc.response.get("Error", {}).get("Code", "")
    message = exc.response.get("Error", {}).get("Message", str(exc))
    if code in permanent_codes:
        return PermanentTransportError(f"{service} rejected message ({code}): {message}")
    return TransientTransportError(f"{service} call failed ({code or 'unknown'}): {message}")


class _AWSClientMixin:
    service_name = ""

    def __init__(
        self,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        region_name: str | None = None,
    ) -> None:
        self.aws_access_key_id = aws_access_key_id or settings.aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key or settings.aws_secret_access_key
        self.region_name = region_name or settings.aws_region_name
        self._client = None

    def _client_or_raise(self):
        if self._client is None:
            if not self.region_name:
                raise RuntimeError("AWS region is required. Set AWS_REGION_NAME in the environment.")

            client_kwargs = {"region_name": self.region_name}
            if self.aws_access_key_id and self.aws_secret_access_key:
                client_kwargs["aws_access_key_id"] = self.aws_access_key_id
                client_kwargs["aws_secret_access_key"] = self.aws_secret_access_key

            self._client = boto3.client(self.service_name, **client_kwargs)
        return self._client


class SESTransport(_AWSClientMixin, Transport):
    """Encapsulates the boto3 SES client."""

    service_name = "ses"
    channel = Channel.EMAIL

    def send(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> SendResult:
        client = self._client_or_raise()
        params = {
            "Source": sender or settings.ses_sender_email,
            "Destination": {"ToAddresses": [to]},
            "Message": {
                "Subject": {"Data": subject},
                "Body": {
                    "Text": {"Data": text_body or subject},
                    "Html": {"Data": html_body or text_body},
                },
            },
        }
        if reply_to:
            params["ReplyToAddresses"] = [reply_to]
        try:
            response = client.send_email(**params)
        except ClientError as exc:
            logger.warning("SES send_email to %s failed: %s", to, exc)
            raise classify_client_error(exc, PERMANENT_SES_CODES, "SES") from exc
        except BotoCoreError as exc:  # pragma: no cover - network service
            logger.exception("SES send_email to %s failed", to)
            raise TransientTransportError("SES send_email failed") from exc

        message_id = response.get("MessageId", "")
        logger.info("SES send_email message_id=%s", message_id)
        return SendResult(provider_id=message_id)


class SNSSmsTransport(_AWSClientMixin, Transport):
    """Sends SMS through SNS direct publish. Only ``text_body`` is used."""

    service_name = "sns"
    channel = Channel.SMS

    def send(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> SendResult:
        client = self._client_or_raise()
        params = {
            "PhoneNumber": to,
            "Message": text_body,
            "MessageAttributes": {
                "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
            },
        }
        sender_id = sender or settings.sms_sender_id
        if sender_id:
            params["MessageAttributes"]["AWS.SNS.SMS.SenderID"] = {"DataType": "String", "StringValue": sender_id}
        try:
            response = client.publish(**params)
        except ClientError as exc:
            logger.warning("SNS publish to %s failed: %s", to, exc)
            raise classify_client_error(exc, PERMANENT_SNS_CODES, "SNS") from exc
        except BotoCoreError as exc:  # pragma: no cover - network service
            logger.exception("SNS publish to %s failed", to)
            raise TransientTransportError("SNS publish failed") from exc

        message_id = response.get("MessageId", "")
        logger.info("SNS publish message_id=%s", message_id)
        return SendResult(provider_id=message_id)


def default_transports() -> dict[Channel, Transport]:
    return {Channel.EMAIL: SESTransport(), Channel.SMS: SNSSmsTransport()}
