"""Send one signed commerce webhook to the gateway.

Useful for manual duplicate-delivery and trigger testing.
"""

import argparse
import json
from pathlib import Path

import httpx

from smsflow.services.gateway.security import HmacSignatureVerifier


def send(base_url: str, source: str, topic: str, shop: str, secret: str, body: bytes) -> httpx.Response:
    """Sign `body` and POST it to `/webhooks/{source}/{topic}`."""

    signature = HmacSignatureVerifier(secret).sign(body)
    with httpx.Client(timeout=5.0) as client:
        return client.post(
            f"{base_url.rstrip('/')}/webhooks/{source}/{topic}",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Shop-Domain": shop,
                "X-Webhook-Hmac-Sha256": signature,
            },
        )


def main() -> None:
    """Parse CLI args and send one webhook (optionally several times)."""

    parser = argparse.ArgumentParser(description="Send a signed webhook to the smsflow gateway.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--source", default="shopify")
    parser.add_argument("--topic", required=True, help="e.g. orders/create")
    parser.add_argument("--shop", required=True, help="shop domain, e.g. demo.myshopify.com")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same payload N times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())
    body = json.dumps(payload).encode("utf-8")

    for attempt in range(1, args.repeat + 1):
        resp = send(args.base_url, args.source, args.topic, args.shop, args.secret, body)
        print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
