import pytest
import torch

from dynrnn.accelerator import Handle
from dynrnn.batched import BatchedSequenceOperator
from dynrnn.gradients import GradientBuffer
from dynrnn.rnn_type import LstmRnnType

INPUT_SIZE = 3
HIDDEN_SIZE = 4
NUM_LAYERS = 2


def _operator(is_training=True, dropout=0.0):
    op = BatchedSequenceOperator(
        Handle(), LstmRnnType(), INPUT_SIZE, HIDDEN_SIZE, NUM_LAYERS, is_training,
        dropout=dropout, dtype=torch.float64,
    )
    w = op.descriptors.new_weight()
    op.initialize(w, torch.Generator().manual_seed(3))
    return op, w


def _sequence(seq_length, batch_size, seed=0):
    generator = torch.Generator().manual_seed(seed)
    x = torch.randn(seq_length, batch_size, INPUT_SIZE, generator=generator, dtype=torch.float64)
    hx = torch.randn(NUM_LAYERS, batch_size, HIDDEN_SIZE, generator=generator, dtype=torch.float64)
    cx = torch.randn(NUM_LAYERS, batch_size, HIDDEN_SIZE, generator=generator, dtype=torch.float64)
    dy = torch.randn(seq_length, batch_size, HIDDEN_SIZE, generator=generator, dtype=torch.float64)
    return x, hx, cx, dy


def test_descriptors_follow_each_minibatch():
    op, w = _operator()
    rnn_desc = op.descriptors.rnn_desc
    for seq_length, batch_size in [(3, 2), (7, 2), (2, 5)]:
        x, hx, cx, dy = _sequence(seq_length, batch_size)
        y, hy, cy, bundle = op.forward(x, hx, cx, w)
        assert (bundle.seq_length, bundle.batch_size) == (seq_length, batch_size)
        assert len(bundle.x_descs) == seq_length
        assert bundle.x_descs[0].dims == (batch_size, INPUT_SIZE, 1)
        assert bundle.state_desc.dims == (NUM_LAYERS, batch_size, HIDDEN_SIZE)
        expected_reserve = op.handle.get_rnn_training_reserve_size(rnn_desc, seq_length, bundle.x_descs)
        expected_workspace = op.handle.get_rnn_workspace_size(rnn_desc, seq_length, bundle.x_descs)
        assert bundle.reserve_space.numel() == expected_reserve
        assert bundle.workspace.numel() == expected_workspace
        assert y.shape == (seq_length, batch_size, HIDDEN_SIZE)
        assert hy.shape == cy.shape == (NUM_LAYERS, batch_size, HIDDEN_SIZE)

        dx, dhx, dcx = op.backward(bundle, dy, w, GradientBuffer(torch.empty_like(w)))
        assert dx.tensor.shape == x.shape


def test_backward_releases_reserve_space():
    op, w = _operator()
    x, hx, cx, dy = _sequence(4, 2)
    _, _, _, bundle = op.forward(x, hx, cx, w)
    assert bundle.pending
    op.backward(bundle, dy, w, GradientBuffer(torch.empty_like(w)))
    assert not bundle.pending
    assert bundle.x is None
    with pytest.raises(RuntimeError, match="pending"):
        op.backward(bundle, dy, w, GradientBuffer(torch.empty_like(w)))


def test_prepared_bundle_must_match_input():
    op, w = _operator()
    bundle = op.prepare(4, 2)
    x, hx, cx, _ = _sequence(3, 2)
    with pytest.raises(ValueError, match="prepared"):
        op.forward(x, hx, cx, w, bundle=bundle)


def test_prepared_bundle_is_reused():
    op, w = _operator()
    bundle = op.prepare(3, 2)
    workspace = bundle.workspace
    for seed in range(2):
        x, hx, cx, dy = _sequence(3, 2, seed=seed)
        _, _, _, returned = op.forward(x, hx, cx, w, bundle=bundle)
        assert returned is bundle
        assert returned.workspace is workspace
        op.backward(returned, dy, w, GradientBuffer(torch.empty_like(w)))


@pytest.mark.parametrize("name", ["dx", "dhx", "dcx"])
def test_accumulated_input_gradient_is_rejected(name):
    op, w = _operator()
    x, hx, cx, dy = _sequence(3, 2)
    _, _, _, bundle = op.forward(x, hx, cx, w)
    like = {"dx": x, "dhx": hx, "dcx": cx}[name]
    written = GradientBuffer(torch.zeros_like(like))
    written.mark_written()
    with pytest.raises(RuntimeError, match="already written"):
        op.backward(bundle, dy, w, GradientBuffer(torch.empty_like(w)), **{name: written})


def test_missing_terminal_gradient_means_zeros():
    op, w = _operator()
    x, hx, cx, dy = _sequence(3, 2)
    zeros = torch.zeros_like(hx)

    _, _, _, bundle = op.forward(x, hx, cx, w)
    dw_none = GradientBuffer(torch.empty_like(w))
    dx_none, dhx_none, _ = op.backward(bundle, dy, w, dw_none)

    _, _, _, bundle = op.forward(x, hx, cx, w)
    dw_zero = GradientBuffer(torch.empty_like(w))
    dx_zero, dhx_zero, _ = op.backward(bundle, dy, w, dw_zero, dhy=zeros, dcy=zeros)

    torch.testing.assert_close(dx_none.tensor, dx_zero.tensor)
    torch.testing.assert_close(dhx_none.tensor, dhx_zero.tensor)
    torch.testing.assert_close(dw_none.tensor, dw_zero.tensor)


def test_weight_gradient_accumulates_across_calls():
    op, w = _operator()
    x, hx, cx, dy = _sequence(3, 2)
    dw = GradientBuffer(torch.full_like(w, float("nan")))
    _, _, _, bundle = op.forward(x, hx, cx, w)
    op.backward(bundle, dy, w, dw)
    single = dw.tensor.clone()
    assert not torch.isnan(single).any()

    _, _, _, bundle = op.forward(x, hx, cx, w)
    op.backward(bundle, dy, w, dw)
    assert dw.gradient_aggregation_counter == 2
    torch.testing.assert_close(dw.tensor, 2 * single)


def test_inference_operator_has_no_reserve():
    op, w = _operator(is_training=False, dropout=0.5)
    assert op.descriptors.rnn_desc.dropout == 0.0
    x, hx, cx, dy = _sequence(3, 2)
    y, _, _, bundle = op.forward(x, hx, cx, w)
    assert bundle is None
    assert op.handle.call_counts["forward_inference"] == 1
    with pytest.raises(RuntimeError, match="is_training"):
        op.backward(bundle, dy, w, GradientBuffer(torch.empty_like(w)))


def test_forward_requires_initial_state():
    op, w = _operator()
    x, hx, _, _ = _sequence(3, 2)
    with pytest.raises(RuntimeError, match="initial states"):
        op.forward(x, hx, None, w)
