"""List or replay dead-lettered delivery messages.

Replay puts the original message id back on the ready list with a fresh
receive count; the consumer's guarded status transitions make a replay of an
already-terminal voucher a no-op.
"""

import argparse

import redis

from giftflow.common.queue import RedisDeliveryQueue


def replay(queue: RedisDeliveryQueue, message_id: str | None, replay_all: bool, dry_run: bool) -> int:
    """Replay one (or every) dead letter; returns a process exit code."""

    dead = queue.dead_letters()
    if not dead:
        print("Dead-letter list is empty.")
        return 1
    if not message_id and not replay_all:
        for mid in dead:
            print(f"{mid} {queue.dead_letter_body(mid)}")
        return 0

    targets = dead if replay_all else [message_id]
    missing = [mid for mid in targets if mid not in dead]
    if missing:
        print(f"Not dead-lettered: {', '.join(missing)}")
        return 2
    for mid in targets:
        print(f"Replaying message_id={mid} body={queue.dead_letter_body(mid)}")
        if not dry_run:
            queue.replay_dead_letter(mid)
    if dry_run:
        print("Dry run only; nothing replayed.")
    return 0


def main() -> None:
    """CLI entrypoint for DLQ inspection and replay."""

    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered voucher deliveries.")
    parser.add_argument("--redis-url", default="redis://localhost:6379/0")
    parser.add_argument("--queue", default="voucher-gifts")
    parser.add_argument("--message-id", default=None, help="dead-lettered message id to replay")
    parser.add_argument("--all", action="store_true", help="replay every dead-lettered message")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    rdb = redis.Redis.from_url(args.redis_url, decode_responses=True)
    rc = replay(RedisDeliveryQueue(rdb, args.queue), args.message_id, args.all, args.dry_run)
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
