from django.test import SimpleTestCase

from shipment_tracking.geo import (
    bearing_deg,
    coordinates_in_range,
    cumulative_distances,
    decode_polyline6,
    haversine_km,
    project_onto_route,
)
from shipment_tracking.smoothing import PositionSmoother

from .support import ONE_DEGREE_KM, km_north


class GeoHelperTests(SimpleTestCase):
    def test_haversine_one_degree_on_equator(self):
        self.assertAlmostEqual(haversine_km((0.0, 0.0), (0.0, 1.0)), ONE_DEGREE_KM, places=6)

    def test_bearing_cardinal_directions(self):
        self.assertAlmostEqual(bearing_deg((0.0, 0.0), (0.0, 1.0)), 90.0, places=6)
        self.assertAlmostEqual(bearing_deg((0.0, 0.0), (1.0, 0.0)), 0.0, places=6)
        self.assertAlmostEqual(bearing_deg((0.0, 0.0), (-1.0, 0.0)), 180.0, places=6)

    def test_decode_polyline6(self):
        points = decode_polyline6("_p~iF~ps|U_ulLnnqC_mqNvxq`@")
        expected = [(3.85, -12.02), (4.07, -12.095), (4.3252, -12.6453)]
        self.assertEqual(len(points), len(expected))
        for (lat, lng), (exp_lat, exp_lng) in zip(points, expected):
            self.assertAlmostEqual(lat, exp_lat, places=6)
            self.assertAlmostEqual(lng, exp_lng, places=6)

    def test_decode_truncated_polyline_raises(self):
        with self.assertRaises(ValueError):
            decode_polyline6("_p~iF~ps|U_")

    def test_coordinate_range(self):
        self.assertTrue(coordinates_in_range(90.0, -180.0))
        self.assertFalse(coordinates_in_range(90.5, 0.0))
        self.assertFalse(coordinates_in_range(0.0, 181.0))
        self.assertFalse(coordinates_in_range(float("nan"), 0.0))


class RouteProjectionTests(SimpleTestCase):
    def setUp(self):
        self.points = [(0.0, 0.0), (0.0, 1.0)]
        self.cumulative = cumulative_distances(self.points)

    def test_midpoint_of_straight_route(self):
        projection = project_onto_route(self.points, self.cumulative, (0.0, 0.5))
        self.assertEqual(projection.segment_index, 0)
        self.assertAlmostEqual(projection.fraction, 0.5, places=6)
        self.assertAlmostEqual(projection.traveled_km, self.cumulative[-1] / 2, places=6)
        self.assertAlmostEqual(projection.offset_km, 0.0, places=6)

    def test_offset_is_perpendicular_distance(self):
        projection = project_onto_route(self.points, self.cumulative, (km_north(3.0), 0.25))
        self.assertAlmostEqual(projection.offset_km, 3.0, delta=0.01)
        self.assertAlmostEqual(projection.fraction, 0.25, places=3)

    def test_positions_beyond_the_ends_clamp(self):
        before = project_onto_route(self.points, self.cumulative, (0.0, -0.2))
        after = project_onto_route(self.points, self.cumulative, (0.0, 1.3))
        self.assertEqual(before.traveled_km, 0.0)
        self.assertAlmostEqual(after.traveled_km, self.cumulative[-1], places=6)

    def test_previous_distance_keeps_vehicle_on_return_leg(self):
        # Out-and-back legs ~110 m apart.
        points = [(0.0, 0.0), (0.0, 0.1), (0.001, 0.1), (0.001, 0.0)]
        cumulative = cumulative_distances(points)
        position = (0.0005, 0.05)

        on_return = project_onto_route(points, cumulative, position, previous_km=12.0)
        self.assertEqual(on_return.segment_index, 2)
        self.assertGreater(on_return.traveled_km, 15.0)

        outbound = project_onto_route(points, cumulative, position, previous_km=2.0)
        self.assertEqual(outbound.segment_index, 0)

    def test_single_point_route_rejected(self):
        with self.assertRaises(ValueError):
            project_onto_route([(0.0, 0.0)], [0.0], (0.0, 0.0))


class PositionSmootherTests(SimpleTestCase):
    def test_first_sample_passes_through(self):
        smoother = PositionSmoother()
        self.assertEqual(smoother.step(0.0, 23.81, 90.41), (23.81, 90.41))

    def test_smoothed_track_stays_close_to_raw(self):
        smoother = PositionSmoother()
        for step in range(20):
            lat = 23.81 + step * 0.0005
            lng = 90.41 + step * 0.0005
            filtered_lat, filtered_lng = smoother.step(step * 30.0, lat, lng)
            self.assertAlmostEqual(filtered_lat, lat, delta=0.002)
            self.assertAlmostEqual(filtered_lng, lng, delta=0.002)

    def test_state_round_trip_continues_the_same_track(self):
        continuous = PositionSmoother()
        restored = PositionSmoother()
        samples = [(0.0, 23.81, 90.41), (30.0, 23.812, 90.411), (60.0, 23.814, 90.413)]
        for timestamp, lat, lng in samples[:2]:
            continuous.step(timestamp, lat, lng)
            restored.step(timestamp, lat, lng)

        restored = PositionSmoother.from_dict(restored.to_dict())
        timestamp, lat, lng = samples[2]
        self.assertEqual(continuous.step(timestamp, lat, lng), restored.step(timestamp, lat, lng))

    def test_empty_state_serializes_to_empty_dict(self):
        self.assertEqual(PositionSmoother().to_dict(), {})
        self.assertIsNone(PositionSmoother.from_dict({}).lat)
