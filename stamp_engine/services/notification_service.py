import httpx
from loguru import logger

from stamp_engine import config


def send_slack_notification(
    *,
    subject: str,
    message: str,
    city: str | None = None,
    business_name: str | None = None,
    http_client: httpx.Client | None = None,
) -> bool:
    """
    Fire-and-forget : un échec d'envoi est loggé, jamais propagé,
    la transition de provisioning est déjà commitée.
    """
    webhook = config.SLACK_WEBHOOK_URL
    if not webhook:
        return False

    header = f":ticket: *{subject}*"
    if business_name:
        header += f" · {business_name}"
    if city:
        header += f" ({city})"

    payload = {"text": f"{header}\n{message}"}

    close_client = False
    client = http_client
    if client is None:
        client = httpx.Client(timeout=config.SLACK_TIMEOUT_SECONDS)
        close_client = True

    try:
        response = client.post(webhook, json=payload)
        response.raise_for_status()
        return True
    except httpx.HTTPError as exc:
        logger.warning("Slack notification failed", subject=subject, city=city, error=str(exc))
        return False
    finally:
        if close_client:
            client.close()
