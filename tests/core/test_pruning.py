"""
Unit tests for geohisse.core.pruning.
"""

import pytest
import numpy as np
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from geohisse.core.config import LikelihoodConfig
from geohisse.core.data import TipData
from geohisse.core.parameters import GeoHiSSEParameters, ParameterMapper
from geohisse.core.pruning import GeoHiSSEPruning, combine_children, equilibrium_frequencies
from geohisse.core.propagator import IVP_METHODS
from geohisse.core.rate_matrix import ConfigurationError, build_rate_matrix
from geohisse.core.trees import TreeStructure, TreeStructureError


EIGHT_TIPS = (
    "(((t1:0.5,t2:0.5):1.0,(t3:1.2,t4:1.2):0.3):0.8,"
    "((t5:0.9,t6:0.9):0.6,(t7:0.4,t8:0.4):1.1):0.8);"
)
EIGHT_RANGES = {
    "t1": "A", "t2": "A", "t3": "AB", "t4": "B",
    "t5": "B", "t6": "AB", "t7": "A", "t8": "B",
}


def two_tip_model():
    """Two tips in A, s = x = 0.1 everywhere, no transitions."""
    tree = TreeStructure.from_newick("(t1:1.0,t2:1.0);", backend="simple")
    tips = TipData.from_dict({"t1": "A", "t2": "A"})
    index = build_rate_matrix(separate_extirpation=True)
    params = GeoHiSSEParameters.from_rates(
        index.space, [0.1, 0.1, 0.1], [0.1, 0.1, 0.0], [0.0] * 4
    )
    return tree, tips, index, ParameterMapper(index).map(params)


def hidden_model(hidden_traits=1, make_null=False):
    index = build_rate_matrix(hidden_traits=hidden_traits, make_null=make_null)
    n = index.space.n_hidden
    s = np.tile([0.4, 0.3, 0.1], n) * np.repeat(np.arange(1, n + 1), 3)
    x = np.tile([0.1, 0.15, 0.0], n)
    rates = np.linspace(0.05, 0.2, index.n_parameters)
    params = GeoHiSSEParameters.from_rates(index.space, s, x, rates)
    return index, ParameterMapper(index).map(params)


class TestNodeArithmetic:

    def test_combine_children(self):
        C = np.zeros((3, 3, 3))
        C[0, 0, 0] = 0.5
        C[2, 0, 1] = C[2, 1, 0] = 0.25
        left = np.array([1.0, 2.0, 0.0])
        right = np.array([3.0, 4.0, 0.0])
        out = combine_children(C, left, right)
        assert out[0] == pytest.approx(0.5 * 1.0 * 3.0)
        assert out[2] == pytest.approx(0.25 * (1.0 * 4.0 + 2.0 * 3.0))

    def test_combine_children_columns(self):
        rng = np.random.default_rng(1)
        C = rng.random((3, 3, 3))
        C = C + np.swapaxes(C, 1, 2)
        left = rng.random((3, 4))
        right = rng.random(3)
        out = combine_children(C, left, right)
        for col in range(4):
            np.testing.assert_allclose(out[:, col], combine_children(C, left[:, col], right))

    def test_equilibrium_frequencies(self):
        Q = np.array([[-1.0, 1.0], [3.0, -3.0]])
        np.testing.assert_allclose(equilibrium_frequencies(Q), [0.75, 0.25])


class TestTwoTipTree:
    """Closed-form likelihoods for a cherry of endemic A tips."""

    def test_equal_root_unconditioned(self):
        tree, tips, index, matrices = two_tip_model()
        config = LikelihoodConfig(root_type="equal", condition_on_survival=False)
        result = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert result.valid
        expected = np.log(0.1 * 1.1 ** -4 / 3)
        assert result.log_likelihood == pytest.approx(expected, rel=1e-6)
        assert result.log_likelihood == pytest.approx(-3.7824381, abs=1e-6)

    def test_madfitz_root_unconditioned(self):
        tree, tips, index, matrices = two_tip_model()
        config = LikelihoodConfig(root_type="madfitz", condition_on_survival=False)
        result = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert result.log_likelihood == pytest.approx(np.log(0.1 * 1.1 ** -4), rel=1e-6)

    def test_madfitz_root_conditioned(self):
        tree, tips, index, matrices = two_tip_model()
        result = GeoHiSSEPruning(tree, tips, index).compute(matrices)
        # D_root / (s (1 - E)^2) with E = 1/11
        assert result.log_likelihood == pytest.approx(-2 * np.log(1.1), rel=1e-6)

    def test_root_edge_is_propagated(self):
        _, tips, index, matrices = two_tip_model()
        tree = TreeStructure.from_newick("(t1:1.0,t2:1.0):0.5;", backend="simple")
        config = LikelihoodConfig(root_type="equal", condition_on_survival=False)
        with_edge = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        tree_no_edge, *_ = two_tip_model()
        without = GeoHiSSEPruning(tree_no_edge, tips, index, config).compute(matrices)
        assert with_edge.log_likelihood < without.log_likelihood

    def test_sampling_fraction(self):
        tree, tips, index, matrices = two_tip_model()
        full = GeoHiSSEPruning(tree, tips, index).compute(matrices)
        config = LikelihoodConfig(sampling_fraction=(0.5, 1.0, 1.0))
        partial = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert partial.valid
        assert partial.log_likelihood != pytest.approx(full.log_likelihood)


class TestScheduling:
    """Wave scheduling gives the sequential answer."""

    @pytest.fixture
    def tree(self):
        return TreeStructure.from_newick(EIGHT_TIPS, backend="simple")

    @pytest.fixture
    def tips(self):
        return TipData.from_dict(EIGHT_RANGES)

    def test_independence_sets(self, tree, tips):
        index, _ = hidden_model()
        engine = GeoHiSSEPruning(tree, tips, index)
        waves = engine.independence_sets()
        assert sorted(waves[0]) == sorted(tree.tip_indices)
        assert waves[-1] == [tree.root_index]
        assert sum(len(w) for w in waves) == tree.n_nodes
        heights = tree.heights()
        for wave in waves:
            for node_id in wave:
                for child in tree.nodes[node_id].children_ids:
                    assert heights[child] < heights[node_id]

    def test_schedules_agree(self, tree, tips):
        index, matrices = hidden_model()
        results = []
        for schedule, workers in [("postorder", 1), ("waves", 1), ("waves", 4)]:
            config = LikelihoodConfig(schedule=schedule, max_workers=workers)
            results.append(GeoHiSSEPruning(tree, tips, index, config).compute(matrices))
        assert all(r.valid for r in results)
        assert results[1].log_likelihood == pytest.approx(results[0].log_likelihood, rel=1e-12)
        assert results[2].log_likelihood == pytest.approx(results[0].log_likelihood, rel=1e-12)

    def test_repeatable(self, tree, tips):
        index, matrices = hidden_model()
        engine = GeoHiSSEPruning(tree, tips, index, LikelihoodConfig(max_workers=3))
        first = engine.compute(matrices).log_likelihood
        second = engine.compute(matrices).log_likelihood
        assert first == second


class TestLikelihoodProperties:

    @pytest.fixture
    def tree(self):
        return TreeStructure.from_newick(EIGHT_TIPS, backend="simple")

    @pytest.fixture
    def tips(self):
        return TipData.from_dict(EIGHT_RANGES)

    @pytest.mark.parametrize("root_type", ["madfitz", "equal", "equilibrium"])
    def test_root_types_finite(self, tree, tips, root_type):
        index, matrices = hidden_model()
        config = LikelihoodConfig(root_type=root_type)
        result = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert result.valid
        assert np.isfinite(result.log_likelihood)
        assert result.log_likelihood < 0

    def test_user_root_weights(self, tree, tips):
        index, matrices = hidden_model()
        weights = np.zeros(6)
        weights[0] = 1.0
        config = LikelihoodConfig(root_type="user", root_weights=weights)
        assert GeoHiSSEPruning(tree, tips, index, config).compute(matrices).valid

    def test_user_root_weights_wrong_length(self, tree, tips):
        index, _ = hidden_model()
        config = LikelihoodConfig(root_type="user", root_weights=[1.0, 1.0, 1.0])
        with pytest.raises(ConfigurationError):
            GeoHiSSEPruning(tree, tips, index, config)

    def test_identical_hidden_classes_match_plain_model(self, tree, tips):
        """Copies of one class connected by hidden moves leave the likelihood unchanged."""
        plain_index = build_rate_matrix()
        s, x = [0.4, 0.3, 0.1], [0.1, 0.15, 0.0]
        plain = ParameterMapper(plain_index).map(
            GeoHiSSEParameters.from_rates(plain_index.space, s, x, [0.05, 0.08])
        )
        hidden_index = build_rate_matrix(hidden_traits=1, make_null=True)
        hidden = ParameterMapper(hidden_index).map(
            GeoHiSSEParameters.from_rates(hidden_index.space, s * 2, x * 2, [0.05, 0.08, 0.3])
        )
        for root_type in ("madfitz", "equal"):
            config = LikelihoodConfig(root_type=root_type)
            a = GeoHiSSEPruning(tree, tips, plain_index, config).compute(plain)
            b = GeoHiSSEPruning(tree, tips, hidden_index, config).compute(hidden)
            assert b.log_likelihood == pytest.approx(a.log_likelihood, rel=1e-6)

    def test_solver_methods_agree(self, tree, tips):
        index, matrices = hidden_model()
        lsoda = GeoHiSSEPruning(tree, tips, index).compute(matrices)
        radau = GeoHiSSEPruning(tree, tips, index, LikelihoodConfig(solver="Radau")).compute(matrices)
        assert radau.log_likelihood == pytest.approx(lsoda.log_likelihood, rel=1e-5)

    def test_missing_range_is_less_informative(self, tree):
        index, matrices = hidden_model()
        observed = GeoHiSSEPruning(tree, TipData.from_dict(EIGHT_RANGES), index).compute(matrices)
        ranges = dict(EIGHT_RANGES, t1="?")
        missing = GeoHiSSEPruning(tree, TipData.from_dict(ranges), index).compute(matrices)
        assert missing.valid
        assert missing.log_likelihood != pytest.approx(observed.log_likelihood)

    def test_keep_conditionals(self, tree, tips):
        index, matrices = hidden_model()
        result = GeoHiSSEPruning(tree, tips, index).compute(matrices, keep_conditionals=True)
        assert result.node_conditionals.shape == (tree.n_nodes, 6)
        internal = result.node_conditionals[tree.internal_indices]
        np.testing.assert_allclose(internal.sum(axis=1), 1.0)
        assert np.all((result.node_extinction >= 0) & (result.node_extinction <= 1))

    def test_tip_array_input(self, tree, tips):
        index, matrices = hidden_model()
        engine = GeoHiSSEPruning(tree, tips, index)
        from_array = GeoHiSSEPruning(tree, engine.tip_conditionals, index)
        assert from_array.compute(matrices).log_likelihood == pytest.approx(
            engine.compute(matrices).log_likelihood
        )


class TestFailures:
    """Invalid points and numerical failures yield -inf, never exceptions."""

    @pytest.fixture
    def tree(self):
        return TreeStructure.from_newick(EIGHT_TIPS, backend="simple")

    @pytest.fixture
    def tips(self):
        return TipData.from_dict(EIGHT_RANGES)

    def test_step_budget_gives_minus_inf(self, tree, tips):
        index, matrices = hidden_model()
        config = LikelihoodConfig(max_steps=1)
        result = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert not result.valid
        assert result.log_likelihood == float("-inf")
        assert "branch above node" in result.message

    def test_step_budget_with_workers(self, tree, tips):
        index, matrices = hidden_model()
        config = LikelihoodConfig(max_steps=1, max_workers=4)
        result = GeoHiSSEPruning(tree, tips, index, config).compute(matrices)
        assert result.log_likelihood == float("-inf")

    @pytest.mark.parametrize("method", IVP_METHODS)
    def test_extreme_rates_zero_tolerance(self, method):
        """Rates near 1e12 with zero tolerances exhaust or break every solver."""
        tree = TreeStructure.from_newick(
            "(((t1:0.5,t2:0.5):1.0,(t3:1.2,t4:1.2):0.3):0.8,(t5:1.5,t6:1.5):1.3);",
            backend="simple",
        )
        tips = TipData.from_dict(
            {"t1": "A", "t2": "A", "t3": "AB", "t4": "B", "t5": "B", "t6": "A"}
        )
        index = build_rate_matrix(hidden_traits=1)
        params = GeoHiSSEParameters(
            turnover=np.full(6, 1e12),
            extinction_fraction=np.array([1e6, 1e6, 0.0, 1e6, 1e6, 0.0]),
            transition_rates=np.full(index.n_parameters, 1e12),
        )
        config = LikelihoodConfig(solver=method, rtol=0.0, atol=0.0, max_steps=20000)
        engine = GeoHiSSEPruning(tree, tips, index, config)
        result = engine.compute(ParameterMapper(index).map(params))
        assert not result.valid
        assert result.log_likelihood == float("-inf")

    def test_invalid_parameters(self, tree, tips):
        index = build_rate_matrix()
        params = GeoHiSSEParameters(
            np.array([0.4, 0.3, 0.6]), np.array([0.5, 0.5, 0.0]), np.array([-1.0, 0.1])
        )
        engine = GeoHiSSEPruning(tree, tips, index)
        result = engine.compute(ParameterMapper(index).map(params))
        assert not result.valid
        assert engine.log_likelihood(ParameterMapper(index).map(params)) == float("-inf")

    def test_impossible_tips(self):
        """Two A tips with only B speciation have zero likelihood."""
        tree = TreeStructure.from_newick("(t1:1.0,t2:1.0);", backend="simple")
        index = build_rate_matrix(separate_extirpation=True)
        params = GeoHiSSEParameters.from_rates(
            index.space, [0.0, 0.1, 0.0], [0.0, 0.1, 0.0], [0.0] * 4
        )
        engine = GeoHiSSEPruning(tree, TipData.from_dict({"t1": "A", "t2": "A"}), index)
        result = engine.compute(ParameterMapper(index).map(params))
        assert not result.valid
        assert result.log_likelihood == float("-inf")


class TestInputValidation:

    def test_missing_taxon(self):
        tree = TreeStructure.from_newick(EIGHT_TIPS, backend="simple")
        ranges = dict(EIGHT_RANGES)
        del ranges["t8"]
        with pytest.raises(TreeStructureError):
            GeoHiSSEPruning(tree, TipData.from_dict(ranges), build_rate_matrix())

    def test_unknown_taxon(self):
        tree = TreeStructure.from_newick(EIGHT_TIPS, backend="simple")
        ranges = dict(EIGHT_RANGES, t9="A")
        with pytest.raises(TreeStructureError):
            GeoHiSSEPruning(tree, TipData.from_dict(ranges), build_rate_matrix())

    def test_tip_array_shape(self):
        tree = TreeStructure.from_newick(EIGHT_TIPS, backend="simple")
        with pytest.raises(TreeStructureError):
            GeoHiSSEPruning(tree, np.ones((8, 6)), build_rate_matrix())

    def test_all_zero_tip(self):
        tree = TreeStructure.from_newick(EIGHT_TIPS, backend="simple")
        conditionals = np.ones((8, 3))
        conditionals[2] = 0.0
        with pytest.raises(TreeStructureError):
            GeoHiSSEPruning(tree, conditionals, build_rate_matrix())
