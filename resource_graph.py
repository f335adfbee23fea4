# resource_graph.py
"""
Thin Azure Resource Graph wrapper used by every discovery step.

Rows come back as plain dicts (object-array format). Paging via skip_token is
followed until the result set is exhausted.
"""

from typing import Any, Dict, List, Optional

from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import QueryRequest, QueryRequestOptions, ResultFormat

import config

PAGE_SIZE = 1000


def kql_quote(value: str) -> str:
    """Single-quoted KQL string literal."""
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def scope_filters(resource_group: Optional[str] = None) -> str:
    if not resource_group:
        return ""
    return f"\n| where resourceGroup =~ {kql_quote(resource_group)}"


def query_resources(
    credential,
    subscription_ids: List[str],
    query: str,
    client: Optional[ResourceGraphClient] = None,
) -> List[Dict[str, Any]]:
    client = client or ResourceGraphClient(credential=credential)

    rows: List[Dict[str, Any]] = []
    skip_token = None
    page = 0
    while True:
        page += 1
        options = QueryRequestOptions(
            result_format=ResultFormat.OBJECT_ARRAY,
            top=PAGE_SIZE,
            skip_token=skip_token,
        )
        req = QueryRequest(subscriptions=list(subscription_ids), query=query, options=options)
        resp = client.resources(req)
        data = resp.data or []
        rows.extend(data)
        config.debug(f"ARG page {page}: {len(data)} rows")

        skip_token = getattr(resp, "skip_token", None)
        if not skip_token:
            break

    return rows
