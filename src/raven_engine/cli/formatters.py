from __future__ import annotations

from typing import Any, Dict, List, Optional


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(widths):
                widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        for i, max_w in max_widths.items():
            if i < len(widths):
                widths[i] = min(widths[i], max_w)

    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "  ".join("-" * w for w in widths)
    row_lines = []
    for row in rows:
        row_lines.append(
            "  ".join(str(cell)[: widths[i]].ljust(widths[i]) for i, cell in enumerate(row))
        )

    return "\n".join([header_line, separator] + row_lines)


def money(amount: Any, currency: str) -> str:
    return f"{amount} {currency}"


def route(shipment: Dict[str, Any]) -> str:
    return (
        f"{shipment['origin_city']}, {shipment['origin_country']} -> "
        f"{shipment['destination_city']}, {shipment['destination_country']}"
    )


def shipment_rows(shipments: List[Dict[str, Any]]) -> List[List[str]]:
    return [
        [
            item["id"],
            item["status"],
            route(item),
            money(item["price"], item["currency"]),
            item.get("courier_id") or "-",
        ]
        for item in shipments
    ]


def inbox_rows(entries: List[Dict[str, Any]]) -> List[List[str]]:
    rows = []
    for entry in entries:
        conversation = entry["conversation"]
        rows.append(
            [
                conversation["id"],
                conversation["shipment_id"],
                entry["other_user_id"],
                conversation["status"],
                str(entry["unread_count"]),
                conversation.get("last_message") or "",
            ]
        )
    return rows


def transaction_rows(entries: List[Dict[str, Any]]) -> List[List[str]]:
    rows = []
    for entry in entries:
        transaction = entry["transaction"]
        rows.append(
            [
                transaction["shipment_id"],
                entry["role"],
                entry["other_user_id"],
                money(transaction["amount"], transaction["currency"]),
                money(transaction["payout_amount"], transaction["currency"]),
                transaction["status"],
            ]
        )
    return rows
