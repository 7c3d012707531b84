"""Tests for CommandIdempotencyGuard."""

from datetime import datetime, timedelta, timezone

from iot_car_link.core.idempotency import CommandIdempotencyGuard


class TestCommandIdempotencyGuard:
    def test_should_process_new_command(self):
        guard = CommandIdempotencyGuard()

        assert guard.should_process("cmd-001") is True

    def test_should_not_process_duplicate(self):
        guard = CommandIdempotencyGuard()

        guard.mark_processed("cmd-001", action="forward")

        assert guard.should_process("cmd-001") is False

    def test_commands_without_id_are_always_processed(self):
        guard = CommandIdempotencyGuard()

        guard.mark_processed("", action="forward")

        assert guard.should_process("") is True
        assert guard._processed == {}

    def test_processed_record_keeps_action(self):
        guard = CommandIdempotencyGuard()

        guard.mark_processed("cmd-001", action="left")

        assert guard._processed["cmd-001"].action == "left"

    def test_expired_entry_is_processed_again(self):
        guard = CommandIdempotencyGuard(ttl_seconds=60)
        guard.mark_processed("cmd-001", action="stop")
        guard._processed["cmd-001"].processed_at = datetime.now(
            timezone.utc
        ) - timedelta(minutes=5)

        assert guard.should_process("cmd-001") is True
        assert "cmd-001" not in guard._processed

    def test_forced_cleanup_bounds_memory(self):
        guard = CommandIdempotencyGuard(max_entries=10, cleanup_interval=1000)

        for index in range(25):
            guard.mark_processed(f"cmd-{index}", action="forward")

        assert len(guard._processed) <= 10
        assert guard.should_process("cmd-24") is False
