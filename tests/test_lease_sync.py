"""Tests for sync_leases: releasing leases whose phase ended on GitHub."""

from issuepilot.phases import process_building, process_grooming
from issuepilot.scheduler import sync_leases
from tests.fakes import PLAN


class TestSyncLeases:
    def test_releases_lease_when_in_flight_label_removed(self, ctx, tracker, store):
        tracker.add_issue(10, "in-progress")
        store.acquire(10, "building")

        # Worker finished out of band and moved the issue on
        tracker.labels[10] = ["pr-ready"]

        assert sync_leases(ctx) == [10]
        assert 10 not in store.list_by_phase("building")

    def test_keeps_lease_while_label_present(self, ctx, tracker, store):
        tracker.add_issue(10, "in-progress", "bug")
        store.acquire(10, "building")

        assert sync_leases(ctx) == []
        assert store.list_by_phase("building") == {10}

    def test_checks_label_expected_for_each_phase(self, ctx, tracker, store):
        tracker.add_issue(1, "grooming")
        tracker.add_issue(2, "grooming")
        tracker.add_issue(3, "reviewing")
        store.acquire(1, "grooming")
        store.acquire(2, "building")
        store.acquire(3, "reviewing")

        assert sync_leases(ctx) == [2]
        assert store.leased_ids() == {1, 3}

    def test_forgets_handle_but_does_not_kill_worker(self, ctx, tracker, store, registry, spawner):
        tracker.add_issue(10, "awaiting-approval")
        store.acquire(10, "grooming")
        registry.track(10, 555)

        sync_leases(ctx)

        assert 10 not in registry
        assert spawner.killed == []

    def test_label_read_failure_keeps_lease(self, ctx, tracker, store):
        tracker.add_issue(10, "pr-ready")
        store.acquire(10, "building")
        tracker.fail_on.add("get_labels")

        assert sync_leases(ctx) == []
        assert store.get(10) is not None

    def test_released_issue_can_be_picked_up_again(self, ctx, tracker, store, spawner):
        tracker.add_issue(4, "needs-grooming")
        process_grooming(ctx)
        assert store.list_by_phase("grooming") == {4}

        # Grooming agent posts a plan and hands over; a human approves it
        tracker.plans[4] = PLAN
        tracker.labels[4] = ["ready"]

        sync_leases(ctx)
        assert process_building(ctx) == [4]
        assert store.get(4).phase == "building"

    def test_stale_grooming_lease_no_longer_blocks_grooming(self, ctx, tracker, store):
        tracker.add_issue(1, "awaiting-approval")
        tracker.add_issue(2, "needs-grooming")
        store.acquire(1, "grooming")

        assert process_grooming(ctx) == []
        sync_leases(ctx)
        assert process_grooming(ctx) == [2]

    def test_unknown_phase_is_released_without_blocking_others(self, ctx, tracker, store):
        tracker.add_issue(1, "grooming")
        tracker.add_issue(2, "pr-ready")
        store.acquire(1, "deploying")
        store.acquire(2, "building")

        assert sync_leases(ctx) == [1, 2]
        assert store.list_all() == []
