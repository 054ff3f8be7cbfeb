from __future__ import annotations

import jax.numpy as jnp

from sgo_jit.core.factor_graph import FactorGraph
from sgo_jit.slam.manifold import build_manifold_metadata, get_manifold_for_var_type, oplus
from sgo_jit.slam.measurements import prior_residual
from sgo_jit.optimization.sparse_optimizer import SparseOptimizer


def test_build_manifold_metadata_follows_index_mapping():
    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)

    pose0 = fg.add_variable("pose_se3", jnp.zeros(6))
    place = fg.add_variable("pose1d", jnp.array([0.5]))
    pose1 = fg.add_variable("pose_se3", jnp.ones(6))
    for nid in (pose0, place, pose1):
        fg.add_factor("prior", (nid,), {"target": fg.vertices[nid].value})

    opt = SparseOptimizer(fg)
    assert opt.initialize_optimization()
    block_slices, manifold_types = build_manifold_metadata(opt.index_mapping, opt.block_offsets)

    assert block_slices[pose0] == slice(0, 6)
    assert block_slices[place] == slice(6, 7)
    assert block_slices[pose1] == slice(7, 13)

    assert manifold_types[pose0] == "se3"
    assert manifold_types[pose1] == "se3"
    assert manifold_types[place] == "euclidean"


def test_unknown_types_are_euclidean():
    assert get_manifold_for_var_type("voxel_cell") == "euclidean"
    assert jnp.allclose(oplus("euclidean", jnp.array([1.0, 2.0]), jnp.array([0.5, -1.0])),
                        jnp.array([1.5, 1.0]))
