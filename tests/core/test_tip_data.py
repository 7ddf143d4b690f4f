"""
Unit tests for tip observations and TipData.
"""

import pytest
import numpy as np
import pandas as pd

from geohisse.core.data import TipData
from geohisse.core.states import RangeCategory, StateSpace
from geohisse.core.tip_observations import RangeTipObservation, parse_range
from geohisse.core.trees import TreeStructure, TreeStructureError


class TestParseRange:

    @pytest.mark.parametrize(
        "code, expected",
        [
            ("A", RangeCategory.A),
            ("b", RangeCategory.B),
            (" AB ", RangeCategory.AB),
            ("BA", RangeCategory.AB),
            (0, RangeCategory.A),
            (np.int64(2), RangeCategory.AB),
            (RangeCategory.B, RangeCategory.B),
        ],
    )
    def test_valid_codes(self, code, expected):
        assert parse_range(code) is expected

    @pytest.mark.parametrize("code", ["C", 3, -1, True, 1.0, None])
    def test_invalid_codes(self, code):
        with pytest.raises(TreeStructureError):
            parse_range(code)


class TestRangeTipObservation:

    @pytest.fixture
    def observation(self):
        return RangeTipObservation(StateSpace(hidden_traits=1))

    def test_single_range_covers_hidden_classes(self, observation):
        np.testing.assert_array_equal(observation.get_tip_likelihood("A"), [1, 0, 0, 1, 0, 0])
        np.testing.assert_array_equal(observation.get_tip_likelihood("AB"), [0, 0, 1, 0, 0, 1])

    def test_ambiguous(self, observation):
        np.testing.assert_array_equal(observation.get_tip_likelihood("A|AB"), [1, 0, 1, 1, 0, 1])
        np.testing.assert_array_equal(observation.get_tip_likelihood(["B", "AB"]), [0, 1, 1, 0, 1, 1])

    @pytest.mark.parametrize("missing", ["?", "-", ""])
    def test_missing(self, observation, missing):
        np.testing.assert_array_equal(observation.get_tip_likelihood(missing), np.ones(6))

    def test_range_weights(self, observation):
        weights = np.array([0.2, 0.0, 0.8])
        np.testing.assert_allclose(
            observation.get_tip_likelihood(weights), [0.2, 0.0, 0.8, 0.2, 0.0, 0.8]
        )

    def test_state_weights(self, observation):
        weights = np.array([1.0, 0.0, 0.0, 0.5, 0.0, 0.0])
        np.testing.assert_allclose(observation.get_tip_likelihood(weights), weights)

    def test_bad_weights(self, observation):
        with pytest.raises(TreeStructureError):
            observation.get_tip_likelihood(np.array([0.5, 0.5]))
        with pytest.raises(TreeStructureError):
            observation.get_tip_likelihood(np.zeros(3))

    def test_empty_observation(self, observation):
        with pytest.raises(TreeStructureError):
            observation.get_tip_likelihood([])

    def test_range_of_states(self, observation):
        assert observation.range_of_states() == [0, 1, 2, 0, 1, 2]


class TestTipData:

    @pytest.fixture
    def tree(self):
        return TreeStructure.from_newick("((t1:1,t2:1):1,t3:2);", backend="simple")

    def test_from_frame_labels(self, tree):
        df = pd.DataFrame({"taxon": ["t1", "t2", "t3"], "range": ["A", "AB", None]})
        data = TipData.from_frame(df)
        assert data.ranges["t3"] == "?"
        conditionals = data.conditionals(tree, RangeTipObservation(StateSpace()))
        row = dict(zip(tree.tip_names, conditionals))
        np.testing.assert_array_equal(row["t1"], [1, 0, 0])
        np.testing.assert_array_equal(row["t2"], [0, 0, 1])
        np.testing.assert_array_equal(row["t3"], [1, 1, 1])

    def test_from_frame_hisse_coding(self):
        df = pd.DataFrame({"species": ["t1", "t2", "t3"], "area": [1, 2, 0]})
        data = TipData.from_frame(df, taxon_column="species", range_column="area", coding="hisse")
        assert data.ranges == {
            "t1": RangeCategory.A,
            "t2": RangeCategory.B,
            "t3": RangeCategory.AB,
        }

    def test_bad_hisse_code(self):
        df = pd.DataFrame({"taxon": ["t1"], "range": [3]})
        with pytest.raises(TreeStructureError):
            TipData.from_frame(df, coding="hisse")

    def test_duplicate_taxa(self):
        df = pd.DataFrame({"taxon": ["t1", "t1"], "range": ["A", "B"]})
        with pytest.raises(TreeStructureError):
            TipData.from_frame(df)

    def test_missing_column(self):
        with pytest.raises(TreeStructureError):
            TipData.from_frame(pd.DataFrame({"taxon": ["t1"]}))

    def test_empty(self):
        with pytest.raises(TreeStructureError):
            TipData.from_dict({})

    def test_from_csv(self, tmp_path, tree):
        path = tmp_path / "ranges.csv"
        path.write_text("taxon,range\nt1,A\nt2,B\nt3,A|AB\n")
        data = TipData.from_csv(path)
        assert len(data) == 3
        assert data.metadata["source"] == str(path)
        conditionals = data.conditionals(tree, RangeTipObservation(StateSpace()))
        assert conditionals.shape == (3, 3)

    def test_mismatch_with_tree(self, tree):
        data = TipData.from_dict({"t1": "A", "t2": "B", "t4": "AB"})
        with pytest.raises(TreeStructureError, match="missing"):
            data.conditionals(tree, RangeTipObservation(StateSpace()))
