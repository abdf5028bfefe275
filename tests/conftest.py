"""Shared fixtures: fast settings, a seeded availability calendar, wired components."""

from __future__ import annotations

import pytest

from therapy_scheduler import (
    AvailabilityIndex,
    ConflictDetector,
    DetectionContext,
    InMemoryDataSource,
    OptimizationRuleEngine,
    ScheduleGenerator,
    SchedulingService,
    Settings,
)

from factories import fast_settings, seed_slots


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture
def index() -> AvailabilityIndex:
    return AvailabilityIndex(seed_slots())


@pytest.fixture
def detector(settings) -> ConflictDetector:
    return ConflictDetector(settings)


@pytest.fixture
def empty_context(index) -> DetectionContext:
    return DetectionContext(existing_sessions=[], availability=index)


@pytest.fixture
def rule_engine(detector, settings) -> OptimizationRuleEngine:
    return OptimizationRuleEngine(detector, settings)


@pytest.fixture
def generator(detector, rule_engine, settings) -> ScheduleGenerator:
    return ScheduleGenerator(detector, rule_engine, settings)


@pytest.fixture
def data_source() -> InMemoryDataSource:
    return InMemoryDataSource(availability=seed_slots())


@pytest.fixture
def service(data_source, settings):
    svc = SchedulingService(data_source, settings)
    yield svc
    svc.shutdown()
