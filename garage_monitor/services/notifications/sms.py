"""
SMS Service - Twilio API Integration

Sends the "garage door is still open" text message via the Twilio REST API.
Uses httpx with a fixed timeout. Failures are logged and reported in the
return value, never raised.
"""

import httpx

from ...common.config import MonitorSettings
from ...common.exceptions import ConfigurationMissing, NotificationFailure
from ...common.logging_setup import get_service_logger, log_notification

logger = get_service_logger("notifications.sms")


def _missing_setting(settings: MonitorSettings) -> str | None:
    for name in (
        "twilio_account_token",
        "twilio_account_sid",
        "twilio_from_number",
        "twilio_to_number",
    ):
        if not getattr(settings, name):
            return name
    return None


async def send_text_message(
    settings: MonitorSettings,
    client: httpx.AsyncClient | None = None,
) -> dict:
    """
    Send one text message via the Twilio Messages API.

    Args:
        settings: Credentials, phone numbers, body and timeout
        client: Optional client to send with (tests pass one with a mock transport)

    Returns:
        dict with "sid" on success, or "error" on failure
        Success: {"sid": "SMxxxxxxxx"}
        Failure: {"error": "500: detailed error message"}
    """
    missing = _missing_setting(settings)
    if missing:
        error = ConfigurationMissing(missing)
        logger.error(f"Cannot call Twilio API: {error}")
        return {"error": error.message}

    sid = settings.twilio_account_sid
    url = f"{settings.twilio_api_base.rstrip('/')}/Accounts/{sid}/Messages.json"
    form = {
        "From": settings.twilio_from_number,
        "To": settings.twilio_to_number,
        "Body": settings.message_body,
    }

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient()

    try:
        logger.info("Calling Twilio API")
        response = await client.post(
            url,
            data=form,
            auth=(sid, settings.twilio_account_token),
            timeout=settings.notify_timeout_seconds,
        )
        if response.is_success:
            result = response.json()
            log_notification(logger, settings.twilio_to_number, True, result.get("sid"))
            return {"sid": result.get("sid")}

        failure = NotificationFailure(
            f"unexpected response code {response.status_code}",
            status_code=response.status_code,
        )
        error_detail = f"{response.status_code}: {response.text}"
        logger.error(str(failure), extra={"status_code": response.status_code})
        log_notification(logger, settings.twilio_to_number, False, error_detail)
        return {"error": error_detail}
    except httpx.HTTPError as e:
        error_detail = f"Connection error: {e}"
        log_notification(logger, settings.twilio_to_number, False, error_detail)
        return {"error": error_detail}
    except Exception as e:
        error_detail = f"Unexpected error: {e}"
        logger.error(f"Exception while calling the Twilio API: {e}", exc_info=True)
        return {"error": error_detail}
    finally:
        if owns_client:
            await client.aclose()
