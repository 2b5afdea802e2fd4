import pytest
import torch

from dynrnn.accelerator import Handle
from dynrnn.batched import BatchedSequenceOperator
from dynrnn.cell import SingleStepCell
from dynrnn.gradients import GradientBuffer
from dynrnn.rnn_type import get_rnn_type
from dynrnn.unrolled import UnrolledSequenceOperator


def _operators(rnn_type="lstm", input_size=3, batch_size=2, hidden_size=4, num_layers=2, is_training=True):
    handle = Handle()
    rnn = get_rnn_type(rnn_type)
    cell = SingleStepCell(
        handle, rnn, input_size, batch_size, hidden_size, num_layers, is_training, dtype=torch.float64
    )
    unrolled = UnrolledSequenceOperator(cell)
    batched = BatchedSequenceOperator(
        handle, rnn, input_size, hidden_size, num_layers, is_training, dtype=torch.float64
    )
    w = cell.descriptors.new_weight()
    unrolled.initialize(w, torch.Generator().manual_seed(11))
    return handle, unrolled, batched, w


def _inputs(seq_length, batch_size=2, input_size=3, hidden_size=4, num_layers=2, seed=0):
    generator = torch.Generator().manual_seed(seed)

    def randn(*shape):
        return torch.randn(shape, generator=generator, dtype=torch.float64)

    x = randn(seq_length, batch_size, input_size)
    hx = randn(num_layers, batch_size, hidden_size)
    cx = randn(num_layers, batch_size, hidden_size)
    dy = randn(seq_length, batch_size, hidden_size)
    dhy = randn(num_layers, batch_size, hidden_size)
    dcy = randn(num_layers, batch_size, hidden_size)
    return x, hx, cx, dy, dhy, dcy


def test_single_step_skips_inner_record():
    _, unrolled, _, w = _operators()
    x, hx, cx, dy, dhy, dcy = _inputs(1)
    y, hy, cy, record = unrolled.forward(x, hx, cx, w)
    assert record.seq_length == 1
    assert record.h is None and record.c is None
    assert record.reserve.shape == (1, unrolled.cell.reserve_size)
    torch.testing.assert_close(hy[-1], y[0])

    dw = GradientBuffer(torch.empty_like(w))
    dx, dhx, dcx = unrolled.backward(record, dy, w, dw, dhy=dhy, dcy=dcy)
    assert dx.tensor.shape == x.shape
    assert dhx.tensor.shape == hx.shape
    assert dcx.tensor.shape == cx.shape


def test_inner_record_shape():
    _, unrolled, _, w = _operators()
    x, hx, cx, *_ = _inputs(4)
    _, _, _, record = unrolled.forward(x, hx, cx, w)
    assert record.h.shape == (3, 2, 2, 4)
    assert record.c.shape == (3, 2, 2, 4)
    assert record.reserve.shape == (4, unrolled.cell.reserve_size)


def test_inference_forward_returns_no_record():
    _, unrolled, _, w = _operators(is_training=False)
    x, hx, cx, dy, dhy, dcy = _inputs(3)
    y, _, _, record = unrolled.forward(x, hx, cx, w)
    assert record is None
    assert y.shape == (3, 2, 4)
    with pytest.raises(RuntimeError):
        unrolled.backward(record, dy, w, GradientBuffer(torch.empty_like(w)), dhy=dhy, dcy=dcy)


def test_forward_requires_initial_state():
    _, unrolled, _, w = _operators()
    x, hx, cx, *_ = _inputs(3)
    with pytest.raises(RuntimeError, match="initial states"):
        unrolled.forward(x, None, cx, w)


@pytest.mark.parametrize(
    "x_shape",
    [(3, 5, 3), (3, 2, 7), (2, 3)],
)
def test_forward_rejects_mismatched_input(x_shape):
    _, unrolled, _, w = _operators()
    _, hx, cx, *_ = _inputs(3)
    with pytest.raises(ValueError):
        unrolled.forward(torch.zeros(x_shape, dtype=torch.float64), hx, cx, w)


def test_backward_requires_terminal_gradient():
    _, unrolled, _, w = _operators()
    x, hx, cx, dy, dhy, _ = _inputs(3)
    _, _, _, record = unrolled.forward(x, hx, cx, w)
    with pytest.raises(RuntimeError, match="terminal"):
        unrolled.backward(record, dy, w, GradientBuffer(torch.empty_like(w)), dhy=dhy)


def test_record_is_consumed_by_backward():
    _, unrolled, _, w = _operators()
    x, hx, cx, dy, dhy, dcy = _inputs(3)
    _, _, _, record = unrolled.forward(x, hx, cx, w)
    unrolled.backward(record, dy, w, GradientBuffer(torch.empty_like(w)), dhy=dhy, dcy=dcy)
    assert record.released
    with pytest.raises(RuntimeError, match="pending"):
        unrolled.backward(record, dy, w, GradientBuffer(torch.empty_like(w)), dhy=dhy, dcy=dcy)


def test_written_input_gradient_is_rejected():
    _, unrolled, _, w = _operators()
    x, hx, cx, dy, dhy, dcy = _inputs(3)
    _, _, _, record = unrolled.forward(x, hx, cx, w)
    dx = GradientBuffer(torch.zeros_like(x))
    dx.mark_written()
    with pytest.raises(RuntimeError, match="already written"):
        unrolled.backward(record, dy, w, GradientBuffer(torch.empty_like(w)), dhy=dhy, dcy=dcy, dx=dx)


@pytest.mark.parametrize("rnn_type", ["lstm", "rnn_tanh", "rnn_relu"])
@pytest.mark.parametrize("seq_length", [1, 2, 5])
def test_unrolled_matches_batched(rnn_type, seq_length):
    handle, unrolled, batched, w = _operators(rnn_type)
    x, hx, cx, dy, dhy, dcy = _inputs(seq_length, seed=seq_length)

    y_u, hy_u, cy_u, record = unrolled.forward(x, hx, cx, w)
    y_b, hy_b, cy_b, bundle = batched.forward(x, hx, cx, w)
    torch.testing.assert_close(y_u, y_b, rtol=1e-5, atol=1e-10)
    torch.testing.assert_close(hy_u, hy_b, rtol=1e-5, atol=1e-10)
    torch.testing.assert_close(cy_u, cy_b, rtol=1e-5, atol=1e-10)

    dw_u = GradientBuffer(torch.empty_like(w))
    dw_b = GradientBuffer(torch.empty_like(w))
    dx_u, dhx_u, dcx_u = unrolled.backward(record, dy, w, dw_u, dhy=dhy, dcy=dcy)
    dx_b, dhx_b, dcx_b = batched.backward(bundle, dy, w, dw_b, dhy=dhy, dcy=dcy)
    torch.testing.assert_close(dx_u.tensor, dx_b.tensor, rtol=1e-5, atol=1e-10)
    torch.testing.assert_close(dhx_u.tensor, dhx_b.tensor, rtol=1e-5, atol=1e-10)
    torch.testing.assert_close(dcx_u.tensor, dcx_b.tensor, rtol=1e-5, atol=1e-10)
    torch.testing.assert_close(dw_u.tensor, dw_b.tensor, rtol=1e-5, atol=1e-10)

    # one cell call per step against one call per sequence
    assert dw_u.gradient_aggregation_counter == seq_length
    assert dw_b.gradient_aggregation_counter == 1
    assert handle.call_counts["forward_training"] == seq_length + 1
    assert handle.call_counts["backward_data"] == seq_length + 1
