"""Subscription grouping for batch scheduling.

Targets are partitioned by owning subscription so that the authenticated
context is switched between batches, never within one. Groups come out in
sorted, deduplicated subscription-name order; within a group the input order
of targets is preserved, which is also the dispatch order.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

import structlog

from bootrescue.models import SubscriptionGroup, TargetRecord

logger = structlog.get_logger(__name__)


def group_by_subscription(records: Iterable[TargetRecord]) -> list[SubscriptionGroup]:
    """Partition target records by subscription name.

    Args:
        records: Target records in input order.

    Returns:
        One group per distinct subscription, sorted by subscription name.
    """
    by_subscription: dict[str, list[TargetRecord]] = defaultdict(list)
    seen: set[tuple[str, str, str]] = set()
    for record in records:
        key = (
            record.subscription_name,
            record.resource_group.casefold(),
            record.vm_name.casefold(),
        )
        if key in seen:
            # One job per target per pass.
            logger.warning(
                "duplicate_target_ignored",
                subscription=record.subscription_name,
                resource_group=record.resource_group,
                vm_name=record.vm_name,
            )
            continue
        seen.add(key)
        by_subscription[record.subscription_name].append(record)

    groups = [
        SubscriptionGroup(subscription_name=name, records=by_subscription[name])
        for name in sorted(by_subscription)
    ]

    logger.debug(
        "targets_grouped",
        subscriptions=[g.subscription_name for g in groups],
        sizes=[len(g.records) for g in groups],
    )
    return groups


__all__ = ["group_by_subscription"]
