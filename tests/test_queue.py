"""Redis delivery queue: visibility windows, receive counts, dead letters."""

import json


def test_publish_then_receive(queue):
    message_id = queue.publish({"voucherId": "v-1", "amount": 10})

    [msg] = queue.receive(max_messages=10, visibility_timeout=30)

    assert msg.message_id == message_id
    assert json.loads(msg.body) == {"voucherId": "v-1", "amount": 10}
    assert msg.receive_count == 1


def test_received_message_is_hidden_until_window_expires(queue, clock):
    queue.publish({"voucherId": "v-1"})
    queue.receive(visibility_timeout=30)

    assert queue.receive(visibility_timeout=30) == []

    clock.advance(31)
    [again] = queue.receive(visibility_timeout=30)
    assert again.receive_count == 2


def test_acked_message_is_not_redelivered(queue, clock):
    queue.publish({"voucherId": "v-1"})
    [msg] = queue.receive(visibility_timeout=30)

    assert queue.ack(msg.message_id) is True
    clock.advance(60)

    assert queue.receive() == []
    assert queue.ack(msg.message_id) is False
    assert queue.depth() == {"ready": 0, "in_flight": 0, "dead_letter": 0}


def test_receive_respects_batch_size(queue):
    for i in range(5):
        queue.publish({"voucherId": f"v-{i}"})

    assert len(queue.receive(max_messages=3)) == 3
    assert len(queue.receive(max_messages=3)) == 2


def test_message_over_max_receive_count_is_dead_lettered(queue, clock):
    message_id = queue.publish({"voucherId": "v-1"})
    for _ in range(queue.max_receive_count):
        assert len(queue.receive(visibility_timeout=10)) == 1
        clock.advance(11)

    assert queue.receive(visibility_timeout=10) == []
    assert queue.dead_letters() == [message_id]
    assert json.loads(queue.dead_letter_body(message_id)) == {"voucherId": "v-1"}


def test_replay_dead_letter_resets_receive_count(queue, clock):
    message_id = queue.publish({"voucherId": "v-1"})
    for _ in range(queue.max_receive_count + 1):
        queue.receive(visibility_timeout=10)
        clock.advance(11)

    assert queue.replay_dead_letter(message_id) is True
    assert queue.dead_letters() == []

    [msg] = queue.receive()
    assert msg.message_id == message_id
    assert msg.receive_count == 1


def test_replay_unknown_dead_letter(queue):
    assert queue.replay_dead_letter("nope") is False
