#!/usr/bin/env python3
"""
Client script to simulate M-Pesa STK push callback traffic.
Generates success and failure callbacks and sends POST requests to the Flask API.
"""

import argparse
import os
import random
import time
import uuid
from datetime import datetime
from typing import Any, Dict

import requests
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

FAILURE_RESULTS = [
    (1, 'The balance is insufficient for the transaction.'),
    (1032, 'Request cancelled by user.'),
    (1037, 'DS timeout user cannot be reached.'),
    (2001, 'The initiator information is invalid.'),
]


def build_callback(
    phone_number: str,
    amount: float,
    result_code: int = 0,
    result_desc: str = 'The service request is processed successfully.',
) -> Dict[str, Any]:
    """
    Build an STK push callback body the way M-Pesa sends it.

    Args:
        phone_number: Payer MSISDN in 254XXXXXXXXX format
        amount: Amount paid (only included on success)
        result_code: Processor result code (0 for success)
        result_desc: Processor result description

    Returns:
        Callback dictionary rooted at Body.stkCallback
    """
    suffix = uuid.uuid4().hex[:12]
    stk_callback = {
        'MerchantRequestID': f'{random.randint(10000, 99999)}-{random.randint(1000000, 9999999)}-1',
        'CheckoutRequestID': f'ws_CO_{datetime.now().strftime("%d%m%Y%H%M%S")}{suffix}',
        'ResultCode': result_code,
        'ResultDesc': result_desc,
    }

    if result_code == 0:
        stk_callback['CallbackMetadata'] = {
            'Item': [
                {'Name': 'Amount', 'Value': amount},
                {'Name': 'MpesaReceiptNumber', 'Value': uuid.uuid4().hex[:10].upper()},
                {'Name': 'Balance'},
                {'Name': 'TransactionDate', 'Value': int(datetime.now().strftime('%Y%m%d%H%M%S'))},
                {'Name': 'PhoneNumber', 'Value': int(phone_number)},
            ]
        }

    return {'Body': {'stkCallback': stk_callback}}


def send_callback(api_url: str, callback: Dict[str, Any]) -> tuple[bool, str]:
    """
    Send a callback to the Flask API.

    Returns:
        Tuple of (success: bool, message: str)
    """
    try:
        response = requests.post(
            f"{api_url}/api/mpesa/callback",
            json=callback,
            headers={'Content-Type': 'application/json'},
            timeout=10
        )

        body = response.json()
        if response.status_code == 200:
            data = body.get('data', {})
            return True, f"Success: {data.get('status', '?')}"
        return False, f"Failed ({response.status_code}): {body.get('error', 'Unknown error')}"

    except requests.exceptions.ConnectionError:
        return False, "Error: Could not connect to API. Is the Flask server running?"
    except requests.exceptions.Timeout:
        return False, "Error: Request timed out"
    except ValueError:
        return False, "Error: Response was not JSON"


def simulate_traffic(
    api_url: str = "http://localhost:5000",
    count: int = 10,
    delay: float = 0.1,
    failure_rate: float = 0.3,
    phone_number: str = '254708374149',
    replay: bool = False,
):
    """
    Send generated callbacks to the API.

    Args:
        api_url: Base URL of the Flask API
        count: Number of callbacks to generate
        delay: Delay in seconds between requests (default: 0.1s)
        failure_rate: Fraction of callbacks carrying a failure result code
        phone_number: Payer MSISDN used for successful callbacks
        replay: Send every callback twice to exercise idempotent upserts
    """
    print(f"Sending {count} callbacks to {api_url}/api/mpesa/callback")
    print(f"Delay between requests: {delay}s\n")
    print("-" * 80)

    success_count = 0
    failure_count = 0
    total_sent = 0

    for index in range(1, count + 1):
        if random.random() < failure_rate:
            result_code, result_desc = random.choice(FAILURE_RESULTS)
            callback = build_callback(phone_number, 0, result_code, result_desc)
        else:
            callback = build_callback(phone_number, random.randint(1, 5000))

        checkout_request_id = callback['Body']['stkCallback']['CheckoutRequestID']
        attempts = 2 if replay else 1

        for _ in range(attempts):
            print(f"  [{index}] Sending callback: {checkout_request_id}...", end=" ")
            success, message = send_callback(api_url, callback)
            if success:
                success_count += 1
                print(f"✓ {message}")
            else:
                failure_count += 1
                print(f"✗ {message}")
            total_sent += 1
            time.sleep(delay)

    print("-" * 80)
    print(f"\nSummary:")
    print(f"  Total sent: {total_sent}")
    print(f"  Accepted: {success_count}")
    print(f"  Rejected: {failure_count}")
    print(f"  Acceptance rate: {(success_count/total_sent*100):.1f}%" if total_sent > 0 else "N/A")


def main():
    parser = argparse.ArgumentParser(
        description='Simulate M-Pesa STK push callback traffic against the callback API'
    )
    parser.add_argument(
        '--url',
        default=os.getenv('CALLBACK_API_URL', 'http://localhost:5000'),
        help='Base URL of the Flask API (default: http://localhost:5000)'
    )
    parser.add_argument(
        '--count',
        type=int,
        default=10,
        help='Number of callbacks to send (default: 10)'
    )
    parser.add_argument(
        '--delay',
        type=float,
        default=0.1,
        help='Delay in seconds between requests (default: 0.1)'
    )
    parser.add_argument(
        '--failure-rate',
        type=float,
        default=0.3,
        help='Fraction of callbacks with a failure result code (default: 0.3)'
    )
    parser.add_argument(
        '--phone',
        default='254708374149',
        help='Payer phone number for successful callbacks (default: 254708374149)'
    )
    parser.add_argument(
        '--replay',
        action='store_true',
        help='Send every callback twice'
    )

    args = parser.parse_args()

    simulate_traffic(
        api_url=args.url,
        count=args.count,
        delay=args.delay,
        failure_rate=args.failure_rate,
        phone_number=args.phone,
        replay=args.replay,
    )


if __name__ == "__main__":
    main()
