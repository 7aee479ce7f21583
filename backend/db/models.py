from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    DateTime,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    display_name = Column(Text, nullable=False)
    subscription_tier = Column(Text, nullable=False, default="free")  # free | gold | platinum
    timezone = Column(Text, default="UTC")
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plans = relationship("MealPlan", back_populates="user", cascade="all, delete-orphan")
    daily_records = relationship("DailyRecord", back_populates="user", cascade="all, delete-orphan")
    quota_counters = relationship("QuotaCounter", back_populates="user", cascade="all, delete-orphan")


class MealPlan(Base):
    __tablename__ = "meal_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(Text, nullable=False, default="Menu Plan")
    start_instant = Column(DateTime, nullable=False)  # naive UTC
    cycle_length_days = Column(Integer, nullable=False, default=7)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="plans")
    items = relationship(
        "PlanItem",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanItem.id",
    )
    check_ins = relationship("CheckIn", back_populates="plan", cascade="all, delete-orphan")
    completion_event = relationship(
        "PlanCompletionEvent", back_populates="plan", uselist=False, cascade="all, delete-orphan"
    )


class PlanItem(Base):
    __tablename__ = "plan_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("meal_plans.id"), nullable=False)
    day_offset = Column(Integer, nullable=False)
    slot = Column(Text, nullable=False)  # breakfast | lunch | dinner | snack
    name = Column(Text, nullable=False)
    calories = Column(Float, default=0.0)
    protein_g = Column(Float, default=0.0)
    carbs_g = Column(Float, default=0.0)
    fat_g = Column(Float, default=0.0)

    plan = relationship("MealPlan", back_populates="items")


class PlanCompletionEvent(Base):
    __tablename__ = "plan_completion_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("meal_plans.id"), nullable=False)
    fired_at = Column(DateTime, nullable=False)
    summary_json = Column(Text)  # JSON object

    plan = relationship("MealPlan", back_populates="completion_event")


class CheckIn(Base):
    __tablename__ = "check_ins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("meal_plans.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("plan_items.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    day_offset = Column(Integer, nullable=False)
    checked_in_at = Column(DateTime, nullable=False)  # naive UTC
    verification_score = Column(Integer, nullable=False)
    notes = Column(Text)
    item_name = Column(Text, nullable=False)
    calories = Column(Float, default=0.0)
    protein_g = Column(Float, default=0.0)
    carbs_g = Column(Float, default=0.0)
    fat_g = Column(Float, default=0.0)

    plan = relationship("MealPlan", back_populates="check_ins")


class DailyRecord(Base):
    __tablename__ = "daily_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    record_date = Column(Text, nullable=False)  # YYYY-MM-DD
    goal_satisfied = Column(Boolean, nullable=False, default=False)
    calories_goal = Column(Float)
    calories_actual = Column(Float)
    protein_goal = Column(Float)
    protein_actual = Column(Float)
    water_ml = Column(Float)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="daily_records")


class QuotaCounter(Base):
    __tablename__ = "quota_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    resource_type = Column(Text, nullable=False)  # meal_scans | ai_chat_tokens
    count = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime, nullable=False)  # naive UTC
    version = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="quota_counters")


class QuotaAuditEvent(Base):
    __tablename__ = "quota_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    resource_type = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)  # rejected | reset
    amount = Column(Integer, default=0)
    limit_value = Column(Integer, default=0)
    count_after = Column(Integer, default=0)
    details_json = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


Index("idx_users_username", User.username, unique=True)
Index("idx_meal_plans_user", MealPlan.user_id, MealPlan.start_instant)
Index("idx_plan_items_unique_slot", PlanItem.plan_id, PlanItem.day_offset, PlanItem.slot, unique=True)
Index("idx_plan_completion_events_plan", PlanCompletionEvent.plan_id, unique=True)
Index("idx_check_ins_plan_date", CheckIn.plan_id, CheckIn.checked_in_at)
Index("idx_check_ins_item", CheckIn.item_id)
Index("idx_daily_records_user_date", DailyRecord.user_id, DailyRecord.record_date, unique=True)
Index("idx_quota_counters_user_resource", QuotaCounter.user_id, QuotaCounter.resource_type, unique=True)
Index("idx_quota_audit_user_date", QuotaAuditEvent.user_id, QuotaAuditEvent.created_at)
