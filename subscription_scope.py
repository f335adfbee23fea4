# subscription_scope.py
"""
Resolve the set of subscriptions a run works on.

Accepted scopes:
1) a single subscription ID
2) a path to a delimited file listing subscriptions (SubscriptionId column, or first column)
3) nothing / "all": every Enabled subscription the credential can see
"""

import csv
import os
import re
from typing import List, Optional

from azure.mgmt.resource import SubscriptionClient

import config

SUBSCRIPTION_COLUMN = "subscriptionid"
GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for s in items:
        key = s.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def read_subscription_file(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        lines = [ln for ln in f if ln.strip() and not ln.lstrip().startswith("#")]

    if not lines:
        return []

    try:
        dialect = csv.Sniffer().sniff(lines[0], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel

    rows = [r for r in csv.reader(lines, dialect) if r]
    header = [c.strip().lower().replace(" ", "") for c in rows[0]]

    if SUBSCRIPTION_COLUMN in header:
        idx = header.index(SUBSCRIPTION_COLUMN)
        body = rows[1:]
    else:
        idx = 0
        # some other header (Id,Name,...) rather than data
        body = rows if GUID_RE.match(rows[0][0].strip()) else rows[1:]

    ids = []
    for r in body:
        if idx < len(r) and r[idx].strip():
            ids.append(r[idx].strip())
    return _dedupe(ids)


def list_enabled_subscriptions(credential, client: Optional[SubscriptionClient] = None) -> List[str]:
    client = client or SubscriptionClient(credential)
    ids = []
    for sub in client.subscriptions.list():
        state = getattr(sub, "state", "") or ""
        state = str(getattr(state, "value", state))
        if state.lower() == "enabled":
            ids.append(sub.subscription_id)
        else:
            config.debug(f"Ignoring subscription {sub.subscription_id} in state {state}")
    return ids


def resolve_subscriptions(scope: Optional[str], credential, client: Optional[SubscriptionClient] = None) -> List[str]:
    scope = (scope or "").strip()

    if not scope or scope.lower() == "all":
        ids = list_enabled_subscriptions(credential, client)
        print(f"[INFO] Subscriptions in scope (all accessible): {len(ids)}")
        return ids

    if os.path.isfile(scope):
        ids = read_subscription_file(scope)
        print(f"[INFO] Subscriptions in scope (from {scope}): {len(ids)}")
        return ids

    return [scope]


def validate_subscription(subscription_id: str, credential, client: Optional[SubscriptionClient] = None) -> bool:
    """
    Equivalent of switching context: False (and a warning) if the subscription
    cannot be read with this credential.
    """
    client = client or SubscriptionClient(credential)
    try:
        sub = client.subscriptions.get(subscription_id)
        print(f"\n=== Subscription: {getattr(sub, 'display_name', '') or ''} ({subscription_id}) ===\n")
        return True
    except Exception as e:
        print(f"[WARN] Invalid subscription {subscription_id}, skipping: {e}")
        return False
