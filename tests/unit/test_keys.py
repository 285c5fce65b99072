"""
Unit tests for object key naming.
"""

from datetime import datetime, timezone

from fieldreel.core.uploads import KeyClock, derive_key, public_url


class TestDeriveKey:
    """Keys are date-partitioned and deterministic."""

    def test_key_layout(self):
        """Key follows recordings/{tenant}/{YYYY}/{MM}/{DD}/{id}_{ms}.{ext}"""
        moment = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)
        epoch_ms = int(moment.timestamp() * 1000)

        key = derive_key("acme", "PKG-1", moment)

        assert key == f"recordings/acme/2024/03/09/PKG-1_{epoch_ms}.webm"

    def test_same_inputs_same_key(self):
        assert derive_key("acme", "PKG-1", 1709985600000) == derive_key("acme", "PKG-1", 1709985600000)

    def test_naive_datetime_is_utc(self):
        aware = datetime(2024, 3, 9, 23, 30, tzinfo=timezone.utc)
        naive = datetime(2024, 3, 9, 23, 30)

        assert derive_key("acme", "PKG-1", naive) == derive_key("acme", "PKG-1", aware)

    def test_epoch_ms_and_datetime_agree(self):
        moment = datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
        epoch_ms = int(moment.timestamp() * 1000)

        assert derive_key("acme", "X", epoch_ms) == derive_key("acme", "X", moment)
        assert "/2024/12/31/" in derive_key("acme", "X", epoch_ms)

    def test_extension_is_used(self):
        assert derive_key("acme", "PKG-1", 0, "mp4").endswith(".mp4")

    def test_unsafe_characters_cannot_add_segments(self):
        """A slash in a barcode must not create extra path segments."""
        key = derive_key("acme/../other", "PKG 1/2", 1709985600000)

        assert key.count("/") == 5
        assert ".." not in key.split("/")

    def test_cleaned_values_stay_distinct(self):
        """Two raw identifiers that clean to the same text still differ."""
        first = derive_key("acme", "PKG 1", 1709985600000)
        second = derive_key("acme", "PKG-1", 1709985600000)

        assert first != second

    def test_different_timestamps_different_keys(self):
        assert derive_key("acme", "PKG-1", 1) != derive_key("acme", "PKG-1", 2)


class TestPublicUrl:

    def test_virtual_hosted_style(self):
        url = public_url("bucket", "ap-northeast-2", "recordings/a/b.webm")
        assert url == "https://bucket.s3.ap-northeast-2.amazonaws.com/recordings/a/b.webm"


class TestKeyClock:
    """The clock never hands out the same millisecond twice."""

    def test_strictly_increasing(self):
        clock = KeyClock()
        values = [clock.now_ms() for _ in range(1000)]

        assert all(b > a for a, b in zip(values, values[1:]))

    def test_keys_from_clock_are_unique(self):
        clock = KeyClock()
        keys = {derive_key("acme", "PKG-1", clock.now_ms()) for _ in range(200)}

        assert len(keys) == 200
