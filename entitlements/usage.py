from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .database import dialect_name
from .models import FeatureType
from .tables import FeatureUsage, generate_uuid


def usage_day(now: Optional[datetime] = None) -> date:
    """Calendar day in UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date()


def month_start(day: date) -> date:
    return day.replace(day=1)


class UsageCounterStore:
    """Per-(user, feature, day) counters with additive upsert."""

    def record_usage(
        self,
        session: Session,
        user_id: str,
        feature: FeatureType,
        day: date,
        quantity: int = 1,
    ) -> None:
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        insert = postgresql.insert if dialect_name(session) == "postgresql" else sqlite.insert
        stmt = insert(FeatureUsage).values(
            id=generate_uuid(),
            user_id=user_id,
            feature_type=FeatureType(feature).value,
            usage_date=day,
            usage_count=quantity,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FeatureUsage.user_id, FeatureUsage.feature_type, FeatureUsage.usage_date],
            set_={"usage_count": FeatureUsage.usage_count + stmt.excluded.usage_count},
        )
        session.execute(stmt)

    def sum_usage(
        self,
        session: Session,
        user_id: str,
        feature: FeatureType,
        start: date,
        end: date,
    ) -> int:
        """Inclusive sum of counters for ``start``..``end``."""
        total = session.execute(
            select(func.coalesce(func.sum(FeatureUsage.usage_count), 0)).where(
                FeatureUsage.user_id == user_id,
                FeatureUsage.feature_type == FeatureType(feature).value,
                FeatureUsage.usage_date >= start,
                FeatureUsage.usage_date <= end,
            )
        ).scalar_one()
        return int(total)

    def used_today(self, session: Session, user_id: str, feature: FeatureType, today: date) -> int:
        return self.sum_usage(session, user_id, feature, today, today)

    def used_this_month(self, session: Session, user_id: str, feature: FeatureType, today: date) -> int:
        return self.sum_usage(session, user_id, feature, month_start(today), today)
