"""Tests for the building processor (bounded parallelism)."""

import pytest

from issuepilot.phases import process_building
from tests.fakes import PLAN


def _ready(tracker, *numbers, plan=PLAN):
    for number in numbers:
        tracker.add_issue(number, "ready", plan=plan)


class TestCapacity:
    def test_claims_lowest_numbers_up_to_capacity(self, ctx, tracker, spawner, store):
        _ready(tracker, 5, 2, 9)
        ctx.max_parallel_builds = 2

        started = process_building(ctx)

        assert started == [2, 5]
        assert spawner.spawned_ids == [2, 5]
        assert store.list_by_phase("building") == {2, 5}
        assert tracker.labels[9] == ["ready"]

    @pytest.mark.parametrize("capacity,active", [(0, 0), (1, 0), (2, 1), (3, 1), (3, 3), (2, 4)])
    def test_never_exceeds_free_capacity(self, ctx, tracker, spawner, store, capacity, active):
        for number in range(100, 100 + active):
            store.acquire(number, "building")
        _ready(tracker, 1, 2, 3, 4, 5)
        ctx.max_parallel_builds = capacity

        started = process_building(ctx)

        assert len(started) == max(0, capacity - active)
        assert len(spawner.spawned) <= max(0, capacity - active)

    def test_at_capacity_does_not_query_github(self, ctx, tracker, store):
        for number in (1, 2, 3):
            store.acquire(number, "building")

        assert process_building(ctx) == []
        assert tracker.calls == []


class TestClaim:
    def test_moves_labels_and_records_branch(self, ctx, tracker, store):
        _ready(tracker, 7)

        process_building(ctx)

        assert tracker.labels[7] == ["in-progress"]
        assert store.get(7).branch == "feature/issue-7"
        assert "Branch: `feature/issue-7`" in tracker.comments[7][0]

    def test_task_payload_has_plan_and_branch(self, ctx, tracker, spawner):
        _ready(tracker, 7)

        process_building(ctx)

        task = spawner.spawned[0]
        assert task.phase == "building"
        assert task.branch == "feature/issue-7"
        assert task.plan == PLAN
        assert PLAN in task.prompt

    def test_skips_already_leased_issue(self, ctx, tracker, spawner, store):
        store.acquire(2, "reviewing")
        _ready(tracker, 2, 3)

        assert process_building(ctx) == [3]

    def test_missing_plan_releases_lease_without_label_change(self, ctx, tracker, spawner, store):
        tracker.add_issue(4, "ready")
        _ready(tracker, 6)

        started = process_building(ctx)

        assert started == [6]
        assert store.get(4) is None
        assert tracker.labels[4] == ["ready"]
        assert 4 not in tracker.comments

    def test_stop_flag_leaves_remaining_candidates_unclaimed(self, ctx, tracker, spawner, store):
        _ready(tracker, 1, 2, 3)

        real_spawn = spawner.spawn

        def spawn_then_stop(task):
            result = real_spawn(task)
            ctx.stop.set()
            return result

        spawner.spawn = spawn_then_stop

        started = process_building(ctx)

        assert started == [1]
        assert store.list_by_phase("building") == {1}
        assert store.get(1).handle is not None
        assert tracker.labels[2] == ["ready"]


class TestErrors:
    def test_branch_error_goes_to_failure_path(self, ctx, tracker, store):
        _ready(tracker, 8)
        tracker.fail_on.add("ensure_branch")

        assert process_building(ctx) == []

        assert store.get(8) is None
        assert "failed" in tracker.labels[8]
        assert "in-progress" not in tracker.labels[8]

    def test_label_error_goes_to_failure_path(self, ctx, tracker, spawner, store):
        _ready(tracker, 8)
        tracker.fail_on.add("add_label")

        process_building(ctx)

        assert spawner.spawned == []
        assert store.get(8) is None
        assert "ensure_branch" in [call[0] for call in tracker.calls]

    def test_one_failure_does_not_stop_other_candidates(self, ctx, tracker, spawner, store):
        _ready(tracker, 1, 2)
        spawner.fail_for.add(1)

        started = process_building(ctx)

        assert started == [2]
        assert store.list_by_phase("building") == {2}
