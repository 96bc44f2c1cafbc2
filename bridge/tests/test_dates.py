import unittest

from bluebridge.dates import (
    APPLE_EPOCH_OFFSET_MS,
    NS_PER_MS,
    to_client_time,
    to_upstream_time,
)


class ToClientTimeTests(unittest.TestCase):
    def test_missing_zero_and_negative_are_none(self):
        for raw in (None, 0, 0.0, -5, "", "abc", float("nan"), float("inf"), True):
            with self.subTest(raw=raw):
                self.assertIsNone(to_client_time(raw))

    def test_daemon_nanoseconds_convert_to_unix_millis(self):
        upstream = (1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS
        self.assertEqual(to_client_time(upstream), 1_700_000_000_000)

    def test_conversion_truncates_sub_millisecond_remainder(self):
        upstream = (1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS + 999_999
        self.assertEqual(to_client_time(upstream), 1_700_000_000_000)

    def test_client_millis_pass_through(self):
        self.assertEqual(to_client_time(1_700_000_000_123), 1_700_000_000_123)
        self.assertEqual(to_client_time("1700000000123"), 1_700_000_000_123)

    def test_small_values_are_nanoseconds_near_2001(self):
        self.assertEqual(to_client_time(5 * NS_PER_MS), APPLE_EPOCH_OFFSET_MS + 5)

    def test_numeric_string_of_daemon_units(self):
        upstream = (1_650_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS
        self.assertEqual(to_client_time(str(upstream)), 1_650_000_000_000)

    def test_float_input_keeps_precision_before_scaling(self):
        upstream = float((1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS)
        self.assertEqual(to_client_time(upstream), 1_700_000_000_000)

    def test_monotonic_across_large_values(self):
        base = (1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS
        values = [base, base + 1, base + NS_PER_MS - 1, base + NS_PER_MS, 2**63 - 1, 2**64]
        converted = [to_client_time(value) for value in values]
        self.assertEqual(converted, sorted(converted))
        self.assertTrue(all(value >= 0 for value in converted))


class ToUpstreamTimeTests(unittest.TestCase):
    def test_client_millis_convert_to_daemon_units(self):
        self.assertEqual(
            to_upstream_time(1_700_000_000_000),
            (1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS,
        )

    def test_clamps_before_daemon_epoch(self):
        self.assertEqual(to_upstream_time(0), 0)
        self.assertEqual(to_upstream_time(APPLE_EPOCH_OFFSET_MS - 1), 0)
        self.assertEqual(to_upstream_time(None), 0)

    def test_round_trip_is_exact_for_whole_millis(self):
        for millis in (1_000_000_000_000, 1_600_000_000_000, 1_700_000_000_001, 4_102_444_800_000):
            with self.subTest(millis=millis):
                self.assertEqual(to_client_time(to_upstream_time(millis)), millis)

    def test_round_trip_of_fractional_millis_never_moves_forward(self):
        millis = 1_700_000_000_000.75
        self.assertLessEqual(to_client_time(to_upstream_time(millis)), millis)

    def test_upstream_round_trip_stays_within_one_millisecond(self):
        upstream = (1_700_000_000_000 - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS + 123_456
        back = to_upstream_time(to_client_time(upstream))
        self.assertLessEqual(back, upstream)
        self.assertLess(upstream - back, NS_PER_MS)


if __name__ == "__main__":
    unittest.main()
