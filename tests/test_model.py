"""Tests for the model data structures and layer factories."""

import numpy as np
import pytest

from weightvault.exceptions import LayerReconstructionError
from weightvault.model import (
    LAYER_FACTORIES,
    Layer,
    LayerKind,
    Model,
    WeightTensor,
    build_layer,
    dense,
    dropout,
)


def test_every_kind_has_a_factory():
    assert set(LAYER_FACTORIES) == set(LayerKind)


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        LayerKind.parse("transformer")


def test_kind_parse_is_case_insensitive():
    assert LayerKind.parse("Dense") is LayerKind.DENSE


class TestWeightTensor:
    def test_shape_must_match_size(self):
        with pytest.raises(ValueError):
            WeightTensor(data=np.zeros(6), shape=(4, 2))

    def test_shape_must_be_positive(self):
        with pytest.raises(ValueError):
            WeightTensor(data=np.zeros(0), shape=(0,))

    def test_unsupported_dtype(self):
        with pytest.raises(ValueError):
            WeightTensor(data=np.zeros(2), shape=(2,), dtype="int8")

    def test_nbytes_uses_dtype(self):
        t = WeightTensor(data=np.zeros(8), shape=(2, 4), dtype="float16")
        assert t.nbytes == 16

    def test_dict_roundtrip(self):
        arr = np.arange(12, dtype=np.float32).reshape(3, 4) / 7
        t = WeightTensor.from_array(arr)
        back = WeightTensor.from_dict(t.to_dict())
        assert back.shape == (3, 4)
        np.testing.assert_array_equal(back.to_array(), arr)


class TestFactories:
    def test_dense_requires_units(self):
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.DENSE, {}, [])

    def test_dense_kernel_must_match_units(self):
        kernel = WeightTensor.from_array(np.zeros((4, 3), dtype=np.float32))
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.DENSE, {'units': 5}, [kernel])

    def test_dense_bias_shape(self):
        kernel = WeightTensor.from_array(np.zeros((4, 3), dtype=np.float32))
        bias = WeightTensor.from_array(np.zeros(4, dtype=np.float32))
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.DENSE, {'units': 3}, [kernel, bias])

    def test_structural_layers_take_no_tensors(self):
        t = WeightTensor.from_array(np.zeros(2, dtype=np.float32))
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.FLATTEN, {}, [t])

    def test_dropout_rate_range(self):
        with pytest.raises(LayerReconstructionError):
            dropout(1.5)

    def test_convolution_requires_filters_and_kernel_size(self):
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.CONVOLUTION, {'filters': 2}, [])

    def test_embedding_single_tensor(self):
        t = WeightTensor.from_array(np.zeros((10, 4), dtype=np.float32))
        layer = build_layer(LayerKind.EMBEDDING, {'input_dim': 10, 'output_dim': 4}, [t])
        assert layer.total_weights == 40
        with pytest.raises(LayerReconstructionError):
            build_layer(LayerKind.EMBEDDING, {'input_dim': 10, 'output_dim': 4}, [t, t])


class TestModel:
    def test_totals(self, dense_model):
        # 16x32 + 32 + 32x32 + 32
        assert dense_model.total_weights == 16 * 32 + 32 + 32 * 32 + 32
        assert dense_model.raw_size == dense_model.total_weights * 4

    def test_topology(self, dense_model):
        assert dense_model.topology() == [[(16, 32), (32,)], [], [(32, 32), (32,)]]

    def test_dict_roundtrip(self, mixed_model):
        back = Model.from_dict(mixed_model.to_dict())
        assert [l.kind for l in back.layers] == [l.kind for l in mixed_model.layers]
        assert [l.config for l in back.layers] == [l.config for l in mixed_model.layers]
        assert back.fingerprint() == mixed_model.fingerprint()

    def test_from_dict_validates(self):
        doc = {'layers': [{'kind': 'dense', 'config': {}, 'weights': []}]}
        with pytest.raises(LayerReconstructionError):
            Model.from_dict(doc)

    def test_fingerprint_changes_with_weights(self):
        a = Model(layers=[dense(2, np.ones((2, 2), dtype=np.float32))])
        b = Model(layers=[dense(2, np.full((2, 2), 2.0, dtype=np.float32))])
        assert a.fingerprint() != b.fingerprint()

    def test_structural_layer_has_no_weights(self):
        layer = Layer(LayerKind.POOLING, {'pool_size': 2})
        assert not layer.has_weights
