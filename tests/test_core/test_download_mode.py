"""
Tests for the download-mode resolver.
"""

import pytest

from comicrawl.core.download_mode import (
    index_window,
    resolve_indices,
    suggest_mode,
    to_zero_based,
)
from comicrawl.database.models import DownloadMode
from comicrawl.models.schemas import CrawlSettingsData, DuplicateCheckResult, DuplicateType


class TestResolveIndices:
    """Tests for resolve_indices()."""

    # ============================================================
    # FULL
    # ============================================================

    @pytest.mark.unit
    def test_full_selects_everything(self) -> None:
        """Test FULL with default settings selects every index."""
        assert resolve_indices(5, DownloadMode.FULL, CrawlSettingsData()) == [0, 1, 2, 3, 4]

    @pytest.mark.unit
    def test_full_with_skip_and_range(self) -> None:
        """Test skip=[3] over range [1,10] of ten items leaves nine indices."""
        settings = CrawlSettingsData(skip_items=[3], range_start=1, range_end=10)

        selected = resolve_indices(10, DownloadMode.FULL, settings)

        assert len(selected) == 9
        assert 2 not in selected
        assert selected == [0, 1, 3, 4, 5, 6, 7, 8, 9]

    @pytest.mark.unit
    def test_range_is_inclusive_and_one_based(self) -> None:
        """Test the range bounds are 1-based and inclusive."""
        settings = CrawlSettingsData(range_start=3, range_end=5)
        assert resolve_indices(10, DownloadMode.FULL, settings) == [2, 3, 4]

    @pytest.mark.unit
    def test_open_range_bounds(self) -> None:
        """Test -1 leaves either bound open."""
        assert resolve_indices(5, DownloadMode.FULL, CrawlSettingsData(range_start=4)) == [3, 4]
        assert resolve_indices(5, DownloadMode.FULL, CrawlSettingsData(range_end=2)) == [0, 1]

    @pytest.mark.unit
    def test_range_beyond_total_is_clamped(self) -> None:
        """Test a range end past the list is clamped to the list."""
        settings = CrawlSettingsData(range_start=2, range_end=50)
        assert resolve_indices(4, DownloadMode.FULL, settings) == [1, 2, 3]

    @pytest.mark.unit
    def test_out_of_bounds_skip_ignored(self) -> None:
        """Test skip positions outside the list are ignored."""
        settings = CrawlSettingsData(skip_items=[0, 7, -2])
        assert resolve_indices(3, DownloadMode.FULL, settings) == [0, 1, 2]

    # ============================================================
    # UPDATE
    # ============================================================

    @pytest.mark.unit
    def test_update_selects_new_items_only(self) -> None:
        """Test UPDATE picks indices beyond the previous total."""
        selected = resolve_indices(8, DownloadMode.UPDATE, CrawlSettingsData(), previous_total=5)
        assert selected == [5, 6, 7]

    @pytest.mark.unit
    def test_update_on_unchanged_list_is_empty(self) -> None:
        """Test UPDATE over an unchanged list selects nothing."""
        assert resolve_indices(5, DownloadMode.UPDATE, CrawlSettingsData(), previous_total=5) == []
        assert resolve_indices(3, DownloadMode.UPDATE, CrawlSettingsData(), present={0, 1, 2}) == []

    @pytest.mark.unit
    def test_update_skips_present_items(self) -> None:
        """Test UPDATE leaves catalogued indices out."""
        selected = resolve_indices(5, DownloadMode.UPDATE, CrawlSettingsData(), present={0, 2, 4})
        assert selected == [1, 3]

    @pytest.mark.unit
    def test_update_adds_redownload(self) -> None:
        """Test redownload items are added back in UPDATE mode."""
        settings = CrawlSettingsData(redownload_items=[2])
        selected = resolve_indices(6, DownloadMode.UPDATE, settings, previous_total=5)
        assert selected == [1, 5]

    @pytest.mark.unit
    def test_skip_wins_over_redownload(self) -> None:
        """Test an index both skipped and redownloaded is skipped."""
        settings = CrawlSettingsData(skip_items=[2], redownload_items=[2])
        assert resolve_indices(4, DownloadMode.UPDATE, settings, previous_total=4) == []

    # ============================================================
    # PARTIAL / NONE
    # ============================================================

    @pytest.mark.unit
    def test_partial_is_range_plus_redownload(self) -> None:
        """Test PARTIAL selects the range plus redownload outside it."""
        settings = CrawlSettingsData(range_start=1, range_end=2, redownload_items=[5])
        assert resolve_indices(6, DownloadMode.PARTIAL, settings) == [0, 1, 4]

    @pytest.mark.unit
    def test_none_selects_nothing(self) -> None:
        """Test NONE never selects anything."""
        assert resolve_indices(10, DownloadMode.NONE, CrawlSettingsData()) == []

    @pytest.mark.unit
    def test_empty_list(self) -> None:
        """Test zero discovered children selects nothing."""
        assert resolve_indices(0, DownloadMode.FULL, CrawlSettingsData()) == []

    # ============================================================
    # Properties
    # ============================================================

    @pytest.mark.unit
    @pytest.mark.parametrize("mode", list(DownloadMode))
    def test_idempotent_and_sorted(self, mode: DownloadMode) -> None:
        """Test same inputs give the same sorted output."""
        settings = CrawlSettingsData(skip_items=[1, 4], redownload_items=[2, 9], range_start=2, range_end=8)

        first = resolve_indices(12, mode, settings, previous_total=3, present={5})
        second = resolve_indices(12, mode, settings, previous_total=3, present={5})

        assert first == second
        assert first == sorted(set(first))
        assert all(0 <= i < 12 for i in first)


class TestHelpers:
    """Tests for the resolver helpers."""

    @pytest.mark.unit
    def test_to_zero_based(self) -> None:
        """Test conversion drops out-of-bounds positions."""
        assert to_zero_based([1, 3, 11], 10) == {0, 2}

    @pytest.mark.unit
    def test_index_window(self) -> None:
        """Test the window of an open range covers the list."""
        assert list(index_window(4)) == [0, 1, 2, 3]
        assert list(index_window(4, 2, 3)) == [1, 2]

    @pytest.mark.unit
    def test_suggest_update_for_catalogued_duplicate(self) -> None:
        """Test a duplicate with children suggests UPDATE."""
        result = DuplicateCheckResult.matched(
            "https://example.com/truyen-tranh/abc",
            DuplicateType.EXACT_URL,
            existing_child_count=12,
        )
        assert suggest_mode(result) is DownloadMode.UPDATE

    @pytest.mark.unit
    def test_suggest_full_without_children(self) -> None:
        """Test a duplicate with no children keeps FULL."""
        assert suggest_mode(DuplicateCheckResult.none("https://example.com/a")) is DownloadMode.FULL
        result = DuplicateCheckResult.matched("https://example.com/a", DuplicateType.SIMILAR_URL)
        assert suggest_mode(result) is DownloadMode.FULL
