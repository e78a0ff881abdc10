from crm_app.importer.pipeline.progress import ProgressPublisher, ProgressSnapshot


def _snapshot(processed, status="processing", job_id=1):
    return ProgressSnapshot(
        job_id=job_id,
        status=status,
        processed_rows=processed,
        successful_rows=processed,
        error_rows=0,
        duplicate_rows=0,
    )


def test_subscriber_receives_published_snapshots():
    publisher = ProgressPublisher(throttle_ms=0)
    subscription = publisher.subscribe(1)

    delivered = publisher.publish(_snapshot(10))

    assert delivered == 1
    assert subscription.get() == _snapshot(10)
    assert subscription.get() is None


def test_publish_without_subscribers_delivers_nothing():
    publisher = ProgressPublisher(throttle_ms=0)

    assert publisher.publish(_snapshot(1)) == 0
    assert publisher.dropped == 0


def test_snapshots_only_reach_their_own_job():
    publisher = ProgressPublisher(throttle_ms=0)
    first = publisher.subscribe(1)
    second = publisher.subscribe(2)

    publisher.publish(_snapshot(5, job_id=2))

    assert first.get() is None
    assert second.get().job_id == 2


def test_non_terminal_snapshots_are_throttled_per_job():
    publisher = ProgressPublisher(throttle_ms=60_000)
    subscription = publisher.subscribe(1)

    assert publisher.publish(_snapshot(1)) == 1
    assert publisher.publish(_snapshot(2)) == 0
    assert publisher.publish(_snapshot(3, status="completed")) == 1

    assert subscription.get().processed_rows == 1
    assert subscription.get().status == "completed"


def test_full_subscriber_queue_drops_updates_but_keeps_terminal_snapshot():
    publisher = ProgressPublisher(queue_size=1, throttle_ms=0)
    subscription = publisher.subscribe(1)

    assert publisher.publish(_snapshot(1)) == 1
    assert publisher.publish(_snapshot(2)) == 0
    assert publisher.publish(_snapshot(3, status="failed")) == 1

    assert publisher.dropped == 1
    assert subscription.dropped == 2
    final = subscription.get()
    assert final.status == "failed"
    assert final.is_terminal


def test_terminal_snapshot_ends_the_topic():
    publisher = ProgressPublisher(throttle_ms=0)
    subscription = publisher.subscribe(1)

    publisher.publish(_snapshot(4, status="completed"))

    assert publisher.subscriber_count(1) == 0
    assert subscription.finished


def test_listen_stops_after_terminal_snapshot():
    publisher = ProgressPublisher(throttle_ms=0)
    subscription = publisher.subscribe(1)
    publisher.publish(_snapshot(2))
    publisher.publish(_snapshot(4, status="completed"))

    received = list(subscription.listen(heartbeat_seconds=0.01))

    assert [snapshot.processed_rows for snapshot in received] == [2, 4]


def test_listen_yields_none_on_idle_heartbeat():
    publisher = ProgressPublisher(throttle_ms=0)
    subscription = publisher.subscribe(1)

    stream = subscription.listen(heartbeat_seconds=0.01)

    assert next(stream) is None


def test_closing_a_subscription_unsubscribes_it():
    publisher = ProgressPublisher(throttle_ms=0)

    with publisher.subscribe(7):
        assert publisher.subscriber_count(7) == 1

    assert publisher.subscriber_count(7) == 0
    assert publisher.publish(_snapshot(1, job_id=7)) == 0


def test_snapshot_as_dict_and_terminal_flag():
    snapshot = _snapshot(3, status="processing")

    assert snapshot.as_dict()["processed_rows"] == 3
    assert snapshot.as_dict()["total_rows"] is None
    assert not snapshot.is_terminal
