"""
Main Execution Script for the Therapy Session Scheduler.

Runs the whole core against an in-memory calendar:
generation -> commit -> bulk freeze -> rollback, and exports the result.
"""

import json
import logging
from datetime import date, time, timedelta

from therapy_models import (
    AvailabilitySlot,
    BulkOperationType,
    BulkReschedulingRequest,
    OwnerType,
    SchedulingRequest,
    TimeWindow,
)
from therapy_scheduler import InMemoryDataSource, SchedulingService, get_settings

logger = logging.getLogger("Main")

EXPORT_FILENAME = "schedule_export.json"


def build_demo_calendar(start: date) -> InMemoryDataSource:
    """Two therapists and one room with weekly availability."""
    def weekly(slot_id, owner, owner_type, day, begin, end, capacity=1):
        return AvailabilitySlot(
            id=slot_id,
            owner_id=owner,
            owner_type=owner_type,
            window=TimeWindow(start_time=begin, end_time=end, day_of_week=day),
            capacity=capacity,
            active_from=start,
        )

    slots = [
        weekly("th01-mon", "th_01", OwnerType.THERAPIST, 0, time(9, 0), time(12, 0)),
        weekly("th01-wed", "th_01", OwnerType.THERAPIST, 2, time(9, 0), time(12, 0)),
        weekly("th01-fri", "th_01", OwnerType.THERAPIST, 4, time(13, 0), time(17, 0)),
        weekly("th02-tue", "th_02", OwnerType.THERAPIST, 1, time(9, 0), time(17, 0)),
        weekly("th02-thu", "th_02", OwnerType.THERAPIST, 3, time(9, 0), time(17, 0)),
    ]
    for day in range(5):
        slots.append(weekly(f"room_a-{day}", "room_a", OwnerType.RESOURCE, day, time(8, 0), time(18, 0), capacity=2))
    return InMemoryDataSource(availability=slots)


def export_schedule(data_source: InMemoryDataSource, filename: str) -> None:
    """Serializes the stored calendar for inspection."""
    sessions = sorted(data_source.all_sessions(), key=lambda s: (s.date, s.window.start_time, s.id))
    with open(filename, "w") as f:
        json.dump([s.model_dump(mode="json") for s in sessions], f, indent=2)
    logger.info(f"💾 Exported {len(sessions)} session(s) to {filename}")


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    logger.info("🚀 Starting Therapy Session Scheduler demo...")
    today = date.today()
    start_date = today + timedelta(days=(7 - today.weekday()) % 7 or 7)  # next Monday

    data_source = build_demo_calendar(start_date)
    service = SchedulingService(data_source, settings)

    # --- PHASE 1: GENERATION ---
    logger.info("--- Phase 1: Schedule Generation ---")
    requests = [
        SchedulingRequest(
            subscription_id="sub_001",
            therapist_id="th_01",
            resource_id="room_a",
            start_date=start_date,
            end_date=start_date + timedelta(weeks=8, days=-1),
            sessions_per_week=2,
            session_duration_minutes=60,
            preferred_days=[0, 2],
            preferred_start_time=time(10, 0),
        ),
        SchedulingRequest(
            subscription_id="sub_002",
            therapist_id="th_01",
            start_date=start_date,
            end_date=start_date + timedelta(weeks=4, days=-1),
            sessions_per_week=2,
            session_duration_minutes=45,
            preferred_days=[0, 4],
            preferred_start_time=time(10, 0),
        ),
    ]
    for request in requests:
        result = service.generate_schedule(request, commit=True)
        print(f"\n📋 {request.subscription_id}: {result.outcome.value} | "
              f"{len(result.sessions)} placed, {len(result.unresolved_session_ids)} unresolved, "
              f"score {result.optimization_score}, rules {result.applied_rules}")
        for entry in result.failure_report[:10]:
            print(f"   ❌ {entry['requested']}: {entry['primary_failure_cause']} "
                  f"after {entry['total_attempts']} attempt(s) - {entry['latest_reason']}")
        for warning in result.warnings[:5]:
            print(f"   ⚠️  {warning.session_id}: {warning.description}")

    # --- PHASE 2: BULK FREEZE ---
    logger.info("--- Phase 2: Bulk Freeze ---")
    freeze = BulkReschedulingRequest(
        operation_type=BulkOperationType.FREEZE,
        subscription_id="sub_001",
        reason="Student travelling for two weeks",
        freeze_start=start_date + timedelta(weeks=2),
        freeze_end=start_date + timedelta(weeks=4),
    )
    pending = service.execute_bulk_reschedule(freeze)
    snapshot = service.wait_for_operation(pending.id, timeout=60)

    print("\n" + "=" * 50)
    print("📊 BULK OPERATION REPORT")
    print("=" * 50)
    print(snapshot.model_dump_json(indent=2))

    # --- PHASE 3: ROLLBACK ---
    logger.info("--- Phase 3: Rollback ---")
    report = service.rollback_operation(pending.id)
    print(f"\n↩️  Restored {len(report.restored_session_ids)} session(s), "
          f"{len(report.conflict_session_ids)} conflict(s), {len(report.failed_session_ids)} failure(s)")

    print("\n📈 Rule statistics")
    for rule_id, stats in service.get_rule_statistics().items():
        print(f"   {rule_id}: {stats}")

    # --- PHASE 4: EXPORT ---
    export_schedule(data_source, EXPORT_FILENAME)
    service.shutdown()

    print("\n✅ Demo Complete.")


if __name__ == "__main__":
    main()
