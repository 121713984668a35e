"""CLI script to sign and send a synthetic course-platform webhook.
Usage: python scripts/send_test_webhook.py [--event EVENT] [--url URL] [--data FILE.json]
"""
import sys
import json
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `emdr_api` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from emdr_api.errors import AppError
from emdr_api.utils import webhooks


def main(event: str, url: str = None, data_file: str = None, dry_run: bool = False) -> int:
    """Send one signed webhook and print the receiver's answer.

    With `dry_run` the signed body and signature are printed instead.
    Returns a process exit code.
    """
    test_data = None
    if data_file:
        test_data = json.loads(pathlib.Path(data_file).read_text(encoding='utf-8'))
    try:
        if dry_run:
            body, signature, _ = webhooks.build_test_payload(event, test_data)
            print(f'{webhooks.SIGNATURE_HEADER}: {signature}')
            print(body.decode('utf-8'))
            return 0
        result = webhooks.send_test_webhook(event, test_data, url)
    except AppError as e:
        print(f'Error: {e.message}')
        return 1
    print(json.dumps(result, indent=2))
    return 0 if result['status'] < 400 else 1


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--event', default='course.completed', choices=webhooks.AVAILABLE_EVENTS)
    parser.add_argument('--url', help='Receiver URL (defaults to WEBHOOK_TARGET_URL)')
    parser.add_argument('--data', dest='data_file', help='JSON file with the `data` section to send')
    parser.add_argument('--dry-run', action='store_true', help='Print the signed payload without sending it')
    args = parser.parse_args()
    sys.exit(main(args.event, args.url, args.data_file, args.dry_run))
