"""
Operator notifications: forward the upgrade message of a pod to ntfy or a webhook.

Only the human-readable message travels, tagged with the pod and container it
is about. Delivery problems are logged as warnings and never raised.
"""

import json
import logging
import string
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = ('min', 'low', 'default', 'high', 'urgent')


def build_payload(namespace: str, pod: str, container: str, message: str) -> Dict[str, str]:
    return {'namespace': namespace, 'pod': pod, 'container': container, 'message': message}


def _configured_headers(cfg: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (cfg.get('headers') or {}).items()}


def _deliver(channel: str, method: str, url: str, body: str,
             headers: Dict[str, str], payload: Dict[str, str]) -> bool:
    try:
        response = requests.request(method, url, data=body.encode('utf-8'),
                                    headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"{channel}: failed to notify about {payload['namespace']}/{payload['pod']}: {e}")
        return False
    logger.info(f"{channel}: notified about {payload['namespace']}/{payload['pod']}")
    return True


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, str]) -> bool:
    """Publish the message to an ntfy topic.

    Config keys: ``url`` (topic URL, required), ``priority`` (one of
    min/low/default/high/urgent) and ``headers`` (extra request headers).
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    priority = cfg.get('priority')
    headers = {
        'Title': f"podwatch: {payload['namespace']}/{payload['pod']} upgrade available",
        'Priority': priority if priority in _NTFY_PRIORITIES else 'default',
        'Tags': 'package',
        'Content-Type': 'text/plain',
    }
    headers.update(_configured_headers(cfg))
    return _deliver('ntfy', 'POST', url, payload['message'], headers, payload)


def render_webhook_body(template: Optional[str], payload: Dict[str, str]) -> str:
    """Fill a string.Template with $namespace, $pod, $container and $message.

    Without a template the payload itself is sent as a JSON object.
    """
    if not template:
        return json.dumps(payload)
    return string.Template(template).safe_substitute(payload)


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, str]) -> bool:
    """Send the message to a webhook.

    Config keys: ``url`` (required), ``method`` (POST or PUT),
    ``headers`` and ``body_template`` (see render_webhook_body).
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    body = render_webhook_body(cfg.get('body_template'), payload)
    headers = {'Content-Type': 'application/json'}
    headers.update(_configured_headers(cfg))
    return _deliver('webhook', (cfg.get('method') or 'POST').upper(), url, body, headers, payload)


def send_notifications(notif_cfg: Optional[Dict[str, Any]], payload: Dict[str, str]) -> None:
    """Send the payload to every channel that has a URL configured. Never raises."""
    senders = (('ntfy', send_ntfy), ('webhook', send_webhook))
    for channel, sender in senders:
        cfg = (notif_cfg or {}).get(channel)
        if not cfg or not cfg.get('url'):
            continue
        try:
            sender(cfg, payload)
        except Exception:
            logger.exception(f"{channel}: unexpected error while notifying")
