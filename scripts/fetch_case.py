#!/usr/bin/env python3
"""Fetch a single ParaConnect case for quick smoke-testing."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone

from paraconnect.clients import CaseApiError, HttpCaseApiClient, normalize_session_token
from paraconnect.config import Settings
from paraconnect.sync.lifecycle import resolve_case_state


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("case_id", help="ParaConnect case ID")
    parser.add_argument(
        "--session-token",
        dest="session_token",
        default=None,
        help="Session token cookie value. Defaults to PARACONNECT_SESSION_TOKEN/.env",
    )
    parser.add_argument(
        "--base-url",
        dest="base_url",
        default=None,
        help="Override API base URL (default http://localhost:5050)",
    )
    parser.add_argument(
        "--with-messages",
        dest="with_messages",
        action="store_true",
        help="Also fetch the case message thread",
    )
    return parser.parse_args()


async def fetch(args: argparse.Namespace, settings: Settings, token: str) -> dict:
    async with HttpCaseApiClient(
        args.base_url or settings.api_base_url,
        token,
        timeout=settings.api_timeout,
        user_agent=settings.user_agent,
        max_retries=settings.api_max_retries,
        backoff_seconds=settings.api_backoff_seconds,
        max_backoff_seconds=settings.api_max_backoff_seconds,
    ) as client:
        case = await client.get_case(args.case_id)
        documents = await client.list_documents(args.case_id)
        messages = await client.list_messages(args.case_id) if args.with_messages else []

    return {
        "id": case.id,
        "title": case.title,
        "status": case.status,
        "derived_state": resolve_case_state(case, settings.viewer_id),
        "escrow_status": case.escrow_status,
        "attorney_id": case.attorney_id,
        "paralegal_id": case.paralegal_id,
        "tasks": [task.to_payload() for task in case.tasks],
        "locked_total_cents": case.locked_total_cents,
        "partial_payout_cents": case.partial_payout_cents,
        "payout_finalized_type": case.payout_finalized_type,
        "documents": [{"id": doc.id, "name": doc.original_name, "status": doc.status} for doc in documents],
        "messages": [
            {"sender_role": message.sender_role, "text": message.text, "created_at": message.created_at.isoformat()}
            for message in messages
            if message.created_at
        ],
        "fetched_at": datetime.now(timezone.utc).isoformat(),
    }


def main() -> int:
    args = parse_args()
    settings = Settings()
    token = normalize_session_token(args.session_token or settings.session_token)
    if not token:
        print("ERROR: session token required via --session-token or PARACONNECT_SESSION_TOKEN", file=sys.stderr)
        return 2

    try:
        payload = asyncio.run(fetch(args, settings, token))
    except CaseApiError as exc:
        print(f"Request failed ({exc.status_code}): {exc.message}", file=sys.stderr)
        return 1

    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
