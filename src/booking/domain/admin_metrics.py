"""Cross-tenant health rollup for the admin monitor.

Every figure is read in one transaction against a single ``now`` so KPIs,
tables and alerts agree with each other. The result is cached per range
for a few seconds; the admin page polls it.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Any, Literal

from psycopg2.extensions import cursor as PgCursor

from booking.infra.cache import Cache, TTLCache
from booking.infra.db import txn
from booking.infra.time import isoformat_or_none, utc_now
from booking.observability.logging import get_logger

logger = get_logger(__name__)

RangeKey = Literal["2h", "24h", "7d", "30d"]

RANGES: dict[str, timedelta] = {
    "2h": timedelta(hours=2),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_RANGE = "24h"

DEFAULT_CACHE_TTL_SECONDS = 15.0

# Alert thresholds.
WH_MIN_EVENTS_2H = 50
WH_MAX_FAIL_RATE = 0.02
WH_STALE_SECONDS = 60 * 60
OUTBOX_FAIL_SPIKE_2H = 10
OUTBOX_OLD_SECONDS = 5 * 60
ONBOARDING_EXPIRED_MAX = 5
RISK_FAILED_2H = 3
RISK_PENDING = 10
RISK_TABLE_LIMIT = 20
BIZ_FAILING_ALERT_LIMIT = 8
TOP_BUSINESSES_LIMIT = 10
TABLE_LIMIT = 50
EXPIRED_TOKENS_LIMIT = 20

LIMITATIONS = {
    "onboardingUsedAt": (
        "Onboarding tokens are deleted on redemption; used tokens and conversion are not measurable."
    ),
    "webhookChannel": "Webhook events carry no channel; failures cannot be split by channel.",
}


def clamp_range(value: str | None) -> str:
    return value if value in RANGES else DEFAULT_RANGE


def cache_key(range_key: str) -> str:
    return f"admin-global:range:{range_key}"


def _cache_ttl() -> float:
    raw = os.environ.get("ADMIN_CACHE_TTL_SECONDS")
    if not raw:
        return DEFAULT_CACHE_TTL_SECONDS
    try:
        return float(raw)
    except ValueError:
        return DEFAULT_CACHE_TTL_SECONDS


_cache = TTLCache(ttl_seconds=_cache_ttl())


def _get_cache() -> Cache:
    return _cache


def _seconds_between(now: datetime, then: datetime | None) -> int | None:
    if then is None:
        return None
    return max(0, int((now - then).total_seconds()))


def _rate(part: int, total: int) -> float:
    return part / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def compute_alerts(
    *,
    now: datetime,
    webhook_total_2h: int,
    webhook_failed_2h: int,
    webhook_last_at: datetime | None,
    outbox_failed_2h: int,
    oldest_pending_age_sec: int | None,
    tokens_expired: int,
    risk_businesses: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Turn the rollup into red/orange/yellow alerts. Pure, no I/O."""
    alerts: list[dict[str, Any]] = []

    fail_rate_2h = _rate(webhook_failed_2h, webhook_total_2h)
    if webhook_total_2h >= WH_MIN_EVENTS_2H and fail_rate_2h > WH_MAX_FAIL_RATE:
        alerts.append(
            {
                "severity": "red",
                "code": "WH_FAIL_RATE_HIGH",
                "title": "Webhook failure rate high (2h)",
                "detail": f"{webhook_failed_2h}/{webhook_total_2h} ({round(fail_rate_2h * 100)}%)",
            }
        )

    if webhook_last_at is not None:
        stale = _seconds_between(now, webhook_last_at) or 0
        if stale > WH_STALE_SECONDS:
            alerts.append(
                {
                    "severity": "red",
                    "code": "WH_STALE",
                    "title": "Webhook: no recent events",
                    "detail": f"Last event {stale // 60} min ago",
                }
            )
    else:
        alerts.append(
            {
                "severity": "orange",
                "code": "WH_NO_DATA",
                "title": "Webhook: no events recorded yet",
            }
        )

    if outbox_failed_2h > OUTBOX_FAIL_SPIKE_2H:
        alerts.append(
            {
                "severity": "red",
                "code": "OUTBOX_FAIL_SPIKE",
                "title": "Outbox: many failures (2h)",
                "detail": f"{outbox_failed_2h} failed",
            }
        )

    if oldest_pending_age_sec is not None and oldest_pending_age_sec > OUTBOX_OLD_SECONDS:
        alerts.append(
            {
                "severity": "orange",
                "code": "OUTBOX_OLD",
                "title": "Outbox: queue is aging",
                "detail": f"Oldest queued message: {oldest_pending_age_sec // 60} min",
            }
        )

    if tokens_expired > ONBOARDING_EXPIRED_MAX:
        alerts.append(
            {
                "severity": "yellow",
                "code": "ONBOARDING_EXPIRED",
                "title": "Onboarding: many expired links",
                "detail": f"{tokens_expired} expired",
            }
        )

    for biz in risk_businesses[:BIZ_FAILING_ALERT_LIMIT]:
        if biz["failed2h"] >= RISK_FAILED_2H:
            alerts.append(
                {
                    "severity": "orange",
                    "code": "BIZ_FAILING",
                    "title": f"Business failing: {biz['businessName'] or biz['businessId']}",
                    "detail": f"{biz['failed2h']} failed (2h), {biz['pending']} queued",
                    "businessId": biz["businessId"],
                    "href": biz["href"],
                }
            )

    return alerts


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _business_names(cur: PgCursor, business_ids: set[str]) -> dict[str, str]:
    if not business_ids:
        return {}
    cur.execute(
        "SELECT id, name FROM businesses WHERE id = ANY(%s::uuid[])",
        (sorted(business_ids),),
    )
    return {str(row[0]): row[1] for row in cur.fetchall()}


def _webhook_kpis(cur: PgCursor, *, range_start: datetime, start_2h: datetime) -> dict[str, Any]:
    cur.execute(
        """
        SELECT
            count(*) FILTER (WHERE received_at >= %(range_start)s),
            count(*) FILTER (WHERE received_at >= %(range_start)s AND status = 'FAILED'),
            count(*) FILTER (WHERE received_at >= %(start_2h)s),
            count(*) FILTER (WHERE received_at >= %(start_2h)s AND status = 'FAILED')
        FROM webhook_events
        WHERE received_at >= LEAST(%(range_start)s, %(start_2h)s)
        """,
        {"range_start": range_start, "start_2h": start_2h},
    )
    total, failed, total_2h, failed_2h = cur.fetchone()
    cur.execute("SELECT max(received_at) FROM webhook_events")
    last_at = cur.fetchone()[0]
    return {
        "total": total,
        "failed": failed,
        "total_2h": total_2h,
        "failed_2h": failed_2h,
        "last_at": last_at,
    }


def _outbox_kpis(cur: PgCursor, *, start_2h: datetime) -> dict[str, Any]:
    cur.execute(
        """
        SELECT
            count(*) FILTER (WHERE status IN ('PENDING', 'SENDING')),
            count(*) FILTER (WHERE status = 'FAILED' AND updated_at >= %s),
            min(created_at) FILTER (WHERE status IN ('PENDING', 'SENDING'))
        FROM outbox_messages
        WHERE status IN ('PENDING', 'SENDING', 'FAILED')
        """,
        (start_2h,),
    )
    pending, failed_2h, oldest_pending_at = cur.fetchone()
    return {"pending": pending, "failed_2h": failed_2h, "oldest_pending_at": oldest_pending_at}


def _delivery_kpis(cur: PgCursor, *, range_start: datetime) -> dict[str, Any]:
    cur.execute(
        """
        SELECT
            count(*) FILTER (WHERE status = 'SENT'),
            count(*) FILTER (WHERE status = 'DELIVERED'),
            count(*) FILTER (WHERE status = 'READ')
        FROM messages
        WHERE direction = 'OUTBOUND' AND created_at >= %s
        """,
        (range_start,),
    )
    sent, delivered, read = cur.fetchone()
    return {
        "sent": sent,
        "delivered": delivered,
        "read": read,
        "readRate": _rate(read, sent + delivered + read),
    }


def _business_kpis(cur: PgCursor, *, range_start: datetime, start_7d: datetime) -> dict[str, Any]:
    cur.execute(
        "SELECT count(DISTINCT business_id) FROM messages WHERE created_at >= %s",
        (range_start,),
    )
    active = cur.fetchone()[0]
    cur.execute(
        """
        SELECT count(DISTINCT ca.business_id)
        FROM channel_accounts ca
        WHERE NOT EXISTS (
            SELECT 1 FROM messages m
            WHERE m.business_id = ca.business_id AND m.created_at >= %s
        )
        """,
        (start_7d,),
    )
    return {"active": active, "dead7d": cur.fetchone()[0]}


def _webhook_fails(cur: PgCursor, *, range_start: datetime) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT id, business_id, provider, event_type, received_at, error
        FROM webhook_events
        WHERE received_at >= %s AND status = 'FAILED'
        ORDER BY received_at DESC
        LIMIT %s
        """,
        (range_start, TABLE_LIMIT),
    )
    return [
        {
            "id": str(row[0]),
            "businessId": str(row[1]) if row[1] else None,
            "provider": row[2],
            "eventType": row[3],
            "atIso": isoformat_or_none(row[4]),
            "error": row[5],
        }
        for row in cur.fetchall()
    ]


def _outbox_fails(cur: PgCursor, *, range_start: datetime) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT id, business_id, conversation_id, channel, contact_key, last_error, updated_at
        FROM outbox_messages
        WHERE status = 'FAILED' AND updated_at >= %s
        ORDER BY updated_at DESC
        LIMIT %s
        """,
        (range_start, TABLE_LIMIT),
    )
    return [
        {
            "id": str(row[0]),
            "businessId": str(row[1]),
            "conversationId": str(row[2]) if row[2] else None,
            "channel": row[3],
            "to": row[4],
            "error": row[5],
            "atIso": isoformat_or_none(row[6]),
        }
        for row in cur.fetchall()
    ]


def _outbox_pending_oldest(cur: PgCursor, *, now: datetime) -> list[dict[str, Any]]:
    """Queued rows already due, oldest first: what is stuck right now."""
    cur.execute(
        """
        SELECT id, business_id, conversation_id, channel, contact_key, status,
               attempt_count, next_attempt_at, last_error, created_at
        FROM outbox_messages
        WHERE status IN ('PENDING', 'SENDING') AND next_attempt_at <= %s
        ORDER BY created_at
        LIMIT %s
        """,
        (now, TABLE_LIMIT),
    )
    return [
        {
            "id": str(row[0]),
            "businessId": str(row[1]),
            "conversationId": str(row[2]) if row[2] else None,
            "channel": row[3],
            "contactKey": row[4],
            "status": row[5],
            "attemptCount": row[6],
            "nextAttemptAtIso": isoformat_or_none(row[7]),
            "lastError": row[8],
            "atIso": isoformat_or_none(row[9]),
        }
        for row in cur.fetchall()
    ]


def _top_businesses(cur: PgCursor, *, range_start: datetime) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT m.business_id,
               count(*),
               count(*) FILTER (WHERE m.direction = 'INBOUND'),
               count(*) FILTER (WHERE m.direction = 'OUTBOUND'),
               max(m.created_at),
               EXISTS (
                   SELECT 1 FROM channel_accounts ca
                   WHERE ca.business_id = m.business_id
                     AND ca.channel = 'whatsapp' AND ca.is_active
               )
        FROM messages m
        WHERE m.created_at >= %s
        GROUP BY m.business_id
        ORDER BY count(*) DESC
        LIMIT %s
        """,
        (range_start, TOP_BUSINESSES_LIMIT),
    )
    return [
        {
            "businessId": str(row[0]),
            "totalMsgs": row[1],
            "inbound": row[2],
            "outbound": row[3],
            "lastMsgAtIso": isoformat_or_none(row[4]),
            "whatsappConnected": bool(row[5]),
        }
        for row in cur.fetchall()
    ]


def _risk_businesses(cur: PgCursor, *, start_2h: datetime) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT business_id,
               count(*) FILTER (WHERE status = 'FAILED') AS failed_2h,
               count(*) FILTER (WHERE status IN ('PENDING', 'SENDING')) AS pending
        FROM outbox_messages
        WHERE status IN ('PENDING', 'SENDING')
           OR (status = 'FAILED' AND updated_at >= %s)
        GROUP BY business_id
        HAVING count(*) FILTER (WHERE status = 'FAILED') >= %s
            OR count(*) FILTER (WHERE status IN ('PENDING', 'SENDING')) >= %s
        ORDER BY failed_2h DESC, pending DESC
        LIMIT %s
        """,
        (start_2h, RISK_FAILED_2H, RISK_PENDING, RISK_TABLE_LIMIT),
    )
    rows = cur.fetchall()
    if not rows:
        return []

    ids = [str(row[0]) for row in rows]
    cur.execute(
        """
        SELECT business_id, max(created_at)
        FROM messages
        WHERE direction = 'INBOUND' AND business_id = ANY(%s::uuid[])
        GROUP BY business_id
        """,
        (ids,),
    )
    last_inbound = {str(row[0]): row[1] for row in cur.fetchall()}
    return [
        {
            "businessId": str(row[0]),
            "failed2h": row[1],
            "pending": row[2],
            "lastInboundAtIso": isoformat_or_none(last_inbound.get(str(row[0]))),
            "href": f"/admin/businesses/{row[0]}",
        }
        for row in rows
    ]


def _onboarding(cur: PgCursor, *, range_start: datetime, now: datetime) -> dict[str, Any]:
    cur.execute(
        """
        SELECT count(*), count(*) FILTER (WHERE expires_at < %s)
        FROM onboarding_tokens
        WHERE created_at >= %s
        """,
        (now, range_start),
    )
    created, expired = cur.fetchone()
    cur.execute(
        """
        SELECT id, business_id, created_at, expires_at
        FROM onboarding_tokens
        WHERE expires_at < %s
        ORDER BY expires_at DESC
        LIMIT %s
        """,
        (now, EXPIRED_TOKENS_LIMIT),
    )
    expired_list = [
        {
            "tokenId": str(row[0]),
            "businessId": str(row[1]),
            "createdAtIso": isoformat_or_none(row[2]),
            "expiresAtIso": isoformat_or_none(row[3]),
        }
        for row in cur.fetchall()
    ]
    return {"created": created, "expired": expired, "expired_list": expired_list}


def _with_names(rows: list[dict[str, Any]], names: dict[str, str]) -> list[dict[str, Any]]:
    for row in rows:
        business_id = row.get("businessId")
        row["businessName"] = names.get(business_id) if business_id else None
    return rows


def build_global_metrics(cur: PgCursor, *, range_key: str, now: datetime) -> dict[str, Any]:
    """Assemble the full admin payload from the database."""
    range_start = now - RANGES[range_key]
    start_2h = now - RANGES["2h"]
    start_7d = now - RANGES["7d"]

    webhook = _webhook_kpis(cur, range_start=range_start, start_2h=start_2h)
    outbox = _outbox_kpis(cur, start_2h=start_2h)
    delivery = _delivery_kpis(cur, range_start=range_start)
    businesses = _business_kpis(cur, range_start=range_start, start_7d=start_7d)

    webhook_fails = _webhook_fails(cur, range_start=range_start)
    outbox_fails = _outbox_fails(cur, range_start=range_start)
    pending_oldest = _outbox_pending_oldest(cur, now=now)
    top = _top_businesses(cur, range_start=range_start)
    risk = _risk_businesses(cur, start_2h=start_2h)
    onboarding = _onboarding(cur, range_start=range_start, now=now)

    tables = [webhook_fails, outbox_fails, pending_oldest, top, risk, onboarding["expired_list"]]
    names = _business_names(
        cur, {row["businessId"] for table in tables for row in table if row.get("businessId")}
    )
    for table in tables:
        _with_names(table, names)

    oldest_pending_age_sec = _seconds_between(now, outbox["oldest_pending_at"])
    alerts = compute_alerts(
        now=now,
        webhook_total_2h=webhook["total_2h"],
        webhook_failed_2h=webhook["failed_2h"],
        webhook_last_at=webhook["last_at"],
        outbox_failed_2h=outbox["failed_2h"],
        oldest_pending_age_sec=oldest_pending_age_sec,
        tokens_expired=onboarding["expired"],
        risk_businesses=risk,
    )

    return {
        "ok": True,
        "range": range_key,
        "nowIso": now.isoformat(),
        "kpis": {
            "webhook": {
                "total": webhook["total"],
                "failed": webhook["failed"],
                "failedRate": _rate(webhook["failed"], webhook["total"]),
                "lastEventAtIso": isoformat_or_none(webhook["last_at"]),
                "last2h": {
                    "total": webhook["total_2h"],
                    "failed": webhook["failed_2h"],
                    "failedRate": _rate(webhook["failed_2h"], webhook["total_2h"]),
                },
            },
            "outbox": {
                "pending": outbox["pending"],
                "failed2h": outbox["failed_2h"],
                "oldestPendingAgeSec": oldest_pending_age_sec,
            },
            "delivery": delivery,
            "businesses": businesses,
        },
        "alerts": alerts,
        "tables": {
            "webhookFails": webhook_fails,
            "outboxFails": outbox_fails,
            "outboxPendingOldest": pending_oldest,
            "topBusinesses": top,
            "riskBusinesses": risk,
            "onboarding": {
                "tokensCreated": onboarding["created"],
                "tokensExpired": onboarding["expired"],
                "tokensUsed": None,
                "conversionRate": None,
            },
            "onboardingExpired": onboarding["expired_list"],
        },
        "limitations": LIMITATIONS,
    }


def get_global_metrics(range_value: str | None, cache: Cache | None = None) -> dict[str, Any]:
    """Cached admin rollup for ``range_value`` (unknown values mean 24h)."""
    range_key = clamp_range(range_value)
    cache = cache if cache is not None else _get_cache()
    key = cache_key(range_key)

    cached = cache.get(key)
    if cached is not None:
        return cached

    with txn() as cur:
        payload = build_global_metrics(cur, range_key=range_key, now=utc_now())
    cache.set(key, payload)
    logger.info("admin global metrics computed", extra={"extra_fields": {"range": range_key}})
    return payload
