# services/email.py
"""Outbound mail via AWS SES."""
from __future__ import annotations

import asyncio
import logging

import boto3
from botocore.exceptions import ClientError

from api.app.config import get_settings

logger = logging.getLogger(__name__)

# SES error codes that will fail the same way on every retry.
PERMANENT_SES_ERRORS = {
    "MessageRejected",
    "MailFromDomainNotVerifiedException",
    "InvalidParameterValue",
}


class EmailRejectedError(Exception):
    pass


def _ses_client():
    return boto3.client("ses", region_name=get_settings().aws_ses_region)


def _send_sync(
    to_address: str,
    subject: str,
    text_body: str,
    reply_to: str | None,
) -> str:
    settings = get_settings()
    kwargs = {
        "Source": settings.email_from_address,
        "Destination": {"ToAddresses": [to_address]},
        "Message": {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Text": {"Data": text_body, "Charset": "UTF-8"}},
        },
    }
    if reply_to:
        kwargs["ReplyToAddresses"] = [reply_to]

    try:
        response = _ses_client().send_email(**kwargs)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in PERMANENT_SES_ERRORS:
            raise EmailRejectedError(f"SES rejected message to {to_address}: {code}") from exc
        raise
    return response["MessageId"]


async def send_email(
    to_address: str,
    subject: str,
    text_body: str,
    reply_to: str | None = None,
) -> str:
    # boto3 is blocking; keep it off the event loop.
    message_id = await asyncio.to_thread(_send_sync, to_address, subject, text_body, reply_to)
    logger.info("Email: sent %s to %s", message_id, to_address)
    return message_id
