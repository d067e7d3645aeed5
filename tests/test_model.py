"""
Model Graph Tests

Tests node behaviour and Model construction:
- Stamps, revert and the deterministic cache
- Generations and cycle detection
- Duplicate names, flattening containers
- Prior draws and value snapshots

Run with: pytest tests/test_model.py -v
"""

import types

import numpy as np
import pytest
from scipy import stats

from mcstep import (
    Stochastic, Deterministic, Potential, Model,
    CyclicGraphError, NotRandomError,
)
from mcstep.model import compute_generations, flatten_nodes


def _flat(name, value=0.0, parents=None, random=None):
    return Stochastic(name, logp=lambda value, **kw: 0.0, value=value,
                      parents=parents, random=random)


# ============================================================================
# NODE TESTS
# ============================================================================

class TestNodes:
    """Test the concrete node types."""

    def test_parent_child_links(self, normal_nodes):
        mu = normal_nodes['mu']
        assert normal_nodes['y'] in mu.children
        assert normal_nodes['shifted'] in mu.children
        assert normal_nodes['y'].node_parents() == [mu]

    def test_value_dtype_and_shape_are_fixed(self):
        x = _flat('x', value=np.zeros(3))
        x.value = [1, 2, 3]
        assert x.value.dtype == np.float64
        with pytest.raises(ValueError, match="fixed shape"):
            x.value = np.zeros(4)

    def test_revert_restores_value_and_stamp(self):
        x = _flat('x', value=1.0)
        stamp = x.stamp
        x.value = 2.0
        assert x.stamp != stamp
        x.revert()
        assert float(x.value) == 1.0
        assert x.stamp == stamp

    def test_revert_without_assignment_raises(self):
        x = _flat('x')
        with pytest.raises(RuntimeError):
            x.revert()

    def test_observed_value_is_immutable(self, normal_nodes):
        with pytest.raises(AttributeError):
            normal_nodes['y'].value = np.zeros(50)

    def test_deterministic_follows_parent(self, normal_nodes):
        mu, shifted = normal_nodes['mu'], normal_nodes['shifted']
        mu.value = 2.0
        assert float(shifted.value) == 3.0

    def test_deterministic_cache_survives_revert(self):
        calls = []

        def square(x):
            calls.append(1)
            return x ** 2

        x = _flat('x', value=3.0)
        sq = Deterministic('sq', eval=square, parents={'x': x})
        before = sq.value
        x.value = 4.0
        assert float(sq.value) == 16.0
        x.revert()
        after = sq.value
        # Both states were cached; reverting needs no re-evaluation
        assert len(calls) == 2
        assert after is before

    def test_deterministic_value_is_read_only(self, normal_nodes):
        with pytest.raises(AttributeError):
            normal_nodes['shifted'].value = 1.0

    def test_potential_cannot_be_parent(self):
        x = _flat('x')
        pot = Potential('pot', logp=lambda x: 0.0, parents={'x': x})
        with pytest.raises(ValueError, match="cannot be a parent"):
            _flat('z', parents={'p': pot})

    def test_logp_sums_elementwise_terms(self):
        y = Stochastic('y', logp=lambda value: stats.norm.logpdf(value), value=np.zeros(4), observed=True)
        assert y.logp == pytest.approx(4 * stats.norm.logpdf(0.0))

    def test_random_without_function_raises(self):
        with pytest.raises(NotRandomError):
            _flat('x').random(np.random.default_rng(0))

    def test_random_does_not_assign(self):
        x = _flat('x', value=0.0, random=lambda rng: 5.0)
        draw = x.random(np.random.default_rng(0))
        assert float(draw) == 5.0
        assert float(x.value) == 0.0


# ============================================================================
# GENERATION TESTS
# ============================================================================

class TestGenerations:
    """Test topological layering and cycle detection."""

    def test_chain_generations(self):
        gens = compute_generations(['c', 'b', 'a'], {'a': [], 'b': ['a'], 'c': ['b']})
        assert gens == [['a'], ['b'], ['c']]

    def test_external_parents_count_as_resolved(self):
        gens = compute_generations(['b'], {'b': ['outside']})
        assert gens == [['b']]

    def test_cycle_raises_with_unresolved_names(self):
        with pytest.raises(CyclicGraphError) as excinfo:
            compute_generations(['a', 'b', 'c'], {'a': ['c'], 'b': ['a'], 'c': ['b']})
        assert excinfo.value.unresolved == ['a', 'b', 'c']

    def test_cycle_through_parent_assignment(self):
        a = _flat('a')
        b = _flat('b', parents={'a': a})
        a.parents = {'b': b}
        with pytest.raises(CyclicGraphError):
            Model([a, b])

    def test_model_generations(self, normal_nodes):
        model = Model(normal_nodes)
        assert model.generations[0] == ['mu']
        assert sorted(model.generations[1]) == ['shifted', 'y']


# ============================================================================
# MODEL CONSTRUCTION TESTS
# ============================================================================

class TestModelBuild:
    """Test flattening, partitioning and validation."""

    def test_partition_by_kind(self, mixed_nodes, normal_nodes):
        model = Model([mixed_nodes, normal_nodes])
        assert {n.name for n in model.stochastics} == {'x', 'k', 'b', 'mu'}
        assert [n.name for n in model.observed_stochastics] == ['y']
        assert [n.name for n in model.deterministics] == ['shifted']
        assert [n.name for n in model.potentials] == ['penalty']

    def test_duplicate_names_raise(self):
        with pytest.raises(ValueError, match="Duplicate"):
            Model([_flat('x'), _flat('x')])

    def test_failed_build_leaves_model_unchanged(self):
        model = Model([_flat('a')])
        with pytest.raises(ValueError):
            model.build([_flat('x'), _flat('x')])
        assert model.node_names == ['a']

    def test_flatten_nested_containers(self):
        a, b, c = _flat('a'), _flat('b'), _flat('c')
        nodes = flatten_nodes({'first': [a, (b,)], 'second': {c, b}})
        assert nodes == [a, b, c]

    def test_flatten_module_like_object(self):
        a = _flat('a')
        container = types.SimpleNamespace(a=a, np=np, label='not a node')
        assert flatten_nodes(container) == [a]

    def test_flatten_module(self):
        module = types.ModuleType('my_model')
        module.a = _flat('a')
        module.np = np
        assert flatten_nodes(module) == [module.a]

    def test_get_node(self, normal_nodes):
        model = Model(normal_nodes)
        assert model['mu'] is normal_nodes['mu']
        assert 'y' in model
        with pytest.raises(KeyError):
            model.get_node('nope')

    def test_markov_blanket(self, normal_nodes):
        model = Model(normal_nodes)
        blanket = model.markov_blanket(normal_nodes['mu'])
        assert blanket == [normal_nodes['mu'], normal_nodes['y']]

    def test_extended_children_skip_deterministics(self):
        x = _flat('x')
        d = Deterministic('d', eval=lambda x: x * 2, parents={'x': x})
        y = _flat('y', parents={'d': d})
        model = Model([x, d, y])
        assert model.extended_children(x) == [y]


# ============================================================================
# MODEL OPERATION TESTS
# ============================================================================

class TestModelOperations:
    """Test joint logp, prior draws, snapshots and copies."""

    def test_joint_logp(self, normal_nodes, normal_data):
        model = Model(normal_nodes)
        expected = stats.norm.logpdf(0.0, 0.0, 10.0) + stats.norm.logpdf(normal_data, 0.0, 1.0).sum()
        assert model.logp == pytest.approx(expected)

    def test_draw_from_prior_changes_values(self, mixed_nodes):
        model = Model(mixed_nodes)
        model.draw_from_prior(np.random.default_rng(3))
        assert float(mixed_nodes['x'].value) != 0.5

    def test_draw_from_prior_without_random_changes_nothing(self):
        a = _flat('a', value=1.0, random=lambda rng: 7.0)
        b = _flat('b', value=2.0)
        model = Model([a, b])
        with pytest.raises(NotRandomError, match="b"):
            model.draw_from_prior(np.random.default_rng(0))
        assert float(a.value) == 1.0

    def test_draw_from_prior_in_generation_order(self):
        top = _flat('top', value=0.0, random=lambda rng: 10.0)
        bottom = _flat('bottom', value=0.0, parents={'top': top},
                       random=lambda rng, top: top + 1.0)
        model = Model([bottom, top])
        model.draw_from_prior(np.random.default_rng(0))
        assert float(bottom.value) == 11.0

    def test_value_snapshot_is_read_only_copy(self, normal_nodes):
        model = Model(normal_nodes)
        snapshot = model.value()
        normal_nodes['mu'].value = 4.0
        assert float(snapshot['mu']) == 0.0
        assert float(snapshot['shifted']) == 1.0
        with pytest.raises(ValueError):
            snapshot['mu'][...] = 1.0
        with pytest.raises(TypeError):
            snapshot['mu'] = 1.0

    def test_copy_is_independent(self, normal_nodes):
        model = Model(normal_nodes)
        clone = model.copy()
        clone['mu'].value = 5.0
        assert float(normal_nodes['mu'].value) == 0.0
        assert float(clone['shifted'].value) == 6.0
