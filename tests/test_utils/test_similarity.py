"""
Tests for name similarity scoring.
"""

import pytest

from comicrawl.utils.similarity import (
    NameRecord,
    best_pair_similarity,
    jaro_winkler,
    record_similarity,
)


class TestJaroWinkler:
    """Tests for jaro_winkler()."""

    @pytest.mark.unit
    def test_identical_names_score_one(self) -> None:
        """Test identical names score 1.0."""
        assert jaro_winkler("One Piece", "One Piece") == 1.0

    @pytest.mark.unit
    def test_case_and_whitespace_insensitive(self) -> None:
        """Test case and surrounding whitespace are ignored."""
        assert jaro_winkler("  one piece ", "ONE PIECE") == 1.0

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ("martha", "marhta"),
            ("Solo Leveling", "Solo Levelling"),
            ("Naruto", "Boruto"),
            ("abc", ""),
        ],
    )
    def test_symmetric(self, a: str, b: str) -> None:
        """Test the score does not depend on argument order."""
        assert jaro_winkler(a, b) == jaro_winkler(b, a)

    @pytest.mark.unit
    def test_known_value(self) -> None:
        """Test the textbook MARTHA/MARHTA value."""
        assert jaro_winkler("MARTHA", "MARHTA") == pytest.approx(0.9611, abs=1e-4)

    @pytest.mark.unit
    def test_odd_transpositions_count_half(self) -> None:
        """Test three out-of-order matches count as one and a half transpositions."""
        assert jaro_winkler("abcdefgh", "bcadefgh") == pytest.approx(0.9375)

    @pytest.mark.unit
    def test_empty_strings(self) -> None:
        """Test empty input scores 0.0."""
        assert jaro_winkler("", "") == 0.0
        assert jaro_winkler(None, "abc") == 0.0

    @pytest.mark.unit
    def test_unrelated_names_score_low(self) -> None:
        """Test unrelated names stay below the review threshold."""
        assert jaro_winkler("Berserk", "Yotsuba&!") < 0.7


class TestRecordSimilarity:
    """Tests for record_similarity()."""

    @pytest.mark.unit
    def test_identical_records(self) -> None:
        """Test identical records score 1.0."""
        record = NameRecord(name="Vagabond", author="Inoue Takehiko")
        assert record_similarity(record, record) == 1.0

    @pytest.mark.unit
    def test_blank_fields_left_out(self) -> None:
        """Test fields blank on either side do not drag the average down."""
        a = NameRecord(name="Vagabond", author="Inoue Takehiko")
        b = NameRecord(name="Vagabond")
        assert record_similarity(a, b) == 1.0

    @pytest.mark.unit
    def test_no_shared_fields(self) -> None:
        """Test records sharing no populated field score 0.0."""
        assert record_similarity(NameRecord(name=""), NameRecord(name="Vagabond")) == 0.0

    @pytest.mark.unit
    def test_alternative_names_best_pair(self) -> None:
        """Test alternative names contribute their best pair."""
        assert best_pair_similarity(["A", "Kimetsu no Yaiba"], ["Kimetsu no Yaiba"]) == 1.0

        a = NameRecord(name="Demon Slayer", alternative_names=("Kimetsu no Yaiba",))
        b = NameRecord(name="Demon Slayer", alternative_names=("Kimetsu no Yaiba", "KnY"))
        assert record_similarity(a, b) == 1.0

    @pytest.mark.unit
    def test_symmetric(self) -> None:
        """Test record scores are symmetric."""
        a = NameRecord(name="Tokyo Ghoul", origin_name="東京喰種", author="Ishida Sui")
        b = NameRecord(name="Tokyo Ghoul:re", origin_name="東京喰種:re", author="Sui Ishida")
        assert record_similarity(a, b) == record_similarity(b, a)
