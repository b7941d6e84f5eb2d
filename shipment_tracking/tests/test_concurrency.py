import threading

from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase

from shipment_tracking import services
from shipment_tracking.dispatcher import NotificationDispatcher, set_dispatcher
from shipment_tracking.models import TrackingEvent
from shipment_tracking.routing import create_route
from shipment_tracking.state import SHIPMENT_LOCKS, ShipmentLocks

from .support import EQUATOR_ROUTE, RecordingChannel, minutes, report


class ShipmentLockTests(SimpleTestCase):
    def test_locks_exist_only_while_held(self):
        locks = ShipmentLocks()
        with locks.hold("SHP-1"):
            with locks.hold("SHP-1"):
                self.assertEqual(len(locks), 1)
            with locks.hold("SHP-2"):
                self.assertEqual(len(locks), 2)
            self.assertEqual(len(locks), 1)
        self.assertEqual(len(locks), 0)

    def test_lock_is_released_after_an_error(self):
        locks = ShipmentLocks()
        with self.assertRaises(ValueError):
            with locks.hold("SHP-1"):
                raise ValueError("boom")
        self.assertEqual(len(locks), 0)

    def test_holding_one_shipment_leaves_others_free(self):
        locks = ShipmentLocks()
        holding = threading.Event()
        release = threading.Event()
        waiter_entered = threading.Event()

        def holder():
            with locks.hold("SHP-1"):
                holding.set()
                release.wait(timeout=5)

        def waiter():
            with locks.hold("SHP-1"):
                waiter_entered.set()

        holder_thread = threading.Thread(target=holder)
        waiter_thread = threading.Thread(target=waiter)
        holder_thread.start()
        try:
            self.assertTrue(holding.wait(timeout=5))
            waiter_thread.start()
            self.assertFalse(waiter_entered.wait(timeout=0.2))

            with locks.hold("SHP-2"):
                self.assertEqual(len(locks), 2)
        finally:
            release.set()
            holder_thread.join()

        waiter_thread.join()
        self.assertTrue(waiter_entered.is_set())
        self.assertEqual(len(locks), 0)

    def test_writers_for_one_shipment_are_serialized(self):
        locks = ShipmentLocks()
        workers = 8
        barrier = threading.Barrier(workers)
        counter = {"value": 0}

        def writer():
            barrier.wait()
            for _ in range(200):
                with locks.hold("SHP-1"):
                    current = counter["value"]
                    counter["value"] = current + 1

        threads = [threading.Thread(target=writer) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(counter["value"], workers * 200)
        self.assertEqual(len(locks), 0)


class InterleavedShipmentTests(TestCase):
    def test_shipments_do_not_share_state(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        create_route("SHP-2", EQUATOR_ROUTE)

        for step in range(4):
            services.submit_position(
                report(shipment_id="SHP-1", lng=0.1 + step * 0.01, at=minutes(step), speed_kmh=30.0)
            )
            services.submit_position(
                report(shipment_id="SHP-2", lng=0.6 + step * 0.01, at=minutes(step), speed_kmh=80.0)
            )

        first = services.get_live_state("SHP-1")
        second = services.get_live_state("SHP-2")
        self.assertEqual({entry["speed"] for entry in first.speed_history}, {30.0})
        self.assertEqual({entry["speed"] for entry in second.speed_history}, {80.0})
        self.assertLess(first.progress_percent, second.progress_percent)
        self.assertEqual(len(services.list_events("SHP-1")), 1)
        self.assertEqual(len(services.list_events("SHP-2")), 1)

    def test_stale_report_for_one_shipment_does_not_block_another(self):
        create_route("SHP-1", EQUATOR_ROUTE)
        create_route("SHP-2", EQUATOR_ROUTE)
        services.submit_position(report(shipment_id="SHP-1", at=minutes(10)))

        self.assertFalse(services.submit_position(report(shipment_id="SHP-1", at=minutes(5))).accepted)
        self.assertTrue(services.submit_position(report(shipment_id="SHP-2", at=minutes(5))).accepted)

    def test_finished_shipments_leave_no_locks_behind(self):
        before = len(SHIPMENT_LOCKS)
        for number in range(50):
            shipment_id = f"SHP-{number}"
            create_route(shipment_id, EQUATOR_ROUTE)
            services.submit_position(report(shipment_id=shipment_id))
            services.confirm_delivery(shipment_id)
        self.assertEqual(len(SHIPMENT_LOCKS), before)


class ParallelIngestTests(TransactionTestCase):
    def setUp(self):
        create_route("SHP-A", EQUATOR_ROUTE)
        create_route("SHP-B", EQUATOR_ROUTE)
        self.channel = RecordingChannel()
        set_dispatcher(NotificationDispatcher(self.channel, asynchronous=False))

    def tearDown(self):
        set_dispatcher(None)

    def test_parallel_submissions_keep_shipments_apart(self):
        barrier = threading.Barrier(2)
        accepted = {}
        errors = []

        def feed(shipment_id, start_lng, speed):
            try:
                barrier.wait(timeout=5)
                accepted[shipment_id] = [
                    services.submit_position(
                        report(
                            shipment_id=shipment_id,
                            lng=start_lng + step * 0.01,
                            at=minutes(step),
                            speed_kmh=speed,
                        )
                    ).accepted
                    for step in range(10)
                ]
            except Exception as error:
                errors.append(error)
            finally:
                connection.close()

        threads = [
            threading.Thread(target=feed, args=("SHP-A", 0.1, 30.0)),
            threading.Thread(target=feed, args=("SHP-B", 0.5, 80.0)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(accepted, {"SHP-A": [True] * 10, "SHP-B": [True] * 10})

        first = services.get_live_state("SHP-A")
        second = services.get_live_state("SHP-B")
        self.assertEqual([entry["speed"] for entry in first.speed_history], [30.0] * 10)
        self.assertEqual([entry["speed"] for entry in second.speed_history], [80.0] * 10)
        self.assertAlmostEqual(first.longitude, 0.19)
        self.assertAlmostEqual(second.longitude, 0.59)
        self.assertEqual(first.last_update, minutes(9))
        self.assertEqual(second.last_update, minutes(9))

        for shipment_id in ("SHP-A", "SHP-B"):
            self.assertEqual(
                [event.event_type for event in services.list_events(shipment_id)],
                [TrackingEvent.IN_TRANSIT],
            )
        self.assertEqual(len(self.channel.payloads), 2)
        self.assertEqual(len(SHIPMENT_LOCKS), 0)
