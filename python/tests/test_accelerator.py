import pytest
import torch

from dynrnn.accelerator import (
    AcceleratorError,
    DirectionMode,
    DropoutDescriptor,
    Handle,
    RNNDescriptor,
    RNNInputMode,
    RNNMode,
    Status,
)
from dynrnn.descriptors import RnnDescriptorSet
from dynrnn.rnn_type import get_rnn_type


def _descriptor_set(rnn_type="lstm", input_size=3, hidden_size=4, num_layers=2, dropout=0.0):
    handle = Handle()
    d = RnnDescriptorSet(
        handle, get_rnn_type(rnn_type), input_size, hidden_size, num_layers, dropout=dropout, dtype=torch.float64
    )
    return handle, d


def _bytes(n):
    return torch.empty(n, dtype=torch.uint8)


def _train_forward(handle, d, x, hx, cx, w):
    T, B, _ = x.shape
    x_descs = d.step_descriptors(B, d.input_size, T)
    y_descs = d.step_descriptors(B, d.hidden_size, T)
    s = d.state_descriptor(B)
    workspace = _bytes(handle.get_rnn_workspace_size(d.rnn_desc, T, x_descs))
    reserve = _bytes(handle.get_rnn_training_reserve_size(d.rnn_desc, T, x_descs))
    y = torch.empty(T, B, d.hidden_size, dtype=x.dtype)
    hy = torch.empty_like(hx)
    cy = torch.empty_like(cx)
    handle.rnn_forward_training(
        d.rnn_desc, T, x_descs, x, s, hx, s, cx, d.w_desc, w, y_descs, y, s, hy, s, cy, workspace, reserve
    )
    return (x_descs, y_descs, s, workspace, reserve), y, hy, cy


@pytest.mark.parametrize("rnn_type", ["lstm", "rnn_tanh", "rnn_relu"])
def test_lin_layer_regions_tile_weight_buffer(rnn_type):
    handle, d = _descriptor_set(rnn_type, input_size=5, hidden_size=3, num_layers=3)
    w = torch.zeros(d.weight_numel, dtype=torch.float64)
    for layer in range(3):
        for lin_layer_id in range(d.rnn_type.num_lin_layers):
            d.lin_layer_matrix(w, layer, lin_layer_id).add_(1.0)
            d.lin_layer_bias(w, layer, lin_layer_id).add_(1.0)
    assert torch.equal(w, torch.ones_like(w))


def test_lin_layer_matrix_shapes():
    _, d = _descriptor_set("lstm", input_size=5, hidden_size=3, num_layers=2)
    w = torch.zeros(d.weight_numel, dtype=torch.float64)
    assert d.lin_layer_matrix(w, 0, 0).shape == (3, 5)
    assert d.lin_layer_matrix(w, 0, 4).shape == (3, 3)
    assert d.lin_layer_matrix(w, 1, 0).shape == (3, 3)
    assert d.lin_layer_bias(w, 1, 7).shape == (3,)


def test_lin_layer_id_out_of_range():
    _, d = _descriptor_set("rnn_tanh")
    w = torch.zeros(d.weight_numel, dtype=torch.float64)
    with pytest.raises(AcceleratorError) as excinfo:
        d.lin_layer_matrix(w, 0, 2)
    assert excinfo.value.status == Status.BAD_PARAM


@pytest.mark.parametrize(
    "mode, direction, input_mode",
    [
        (RNNMode.GRU, DirectionMode.UNIDIRECTIONAL, RNNInputMode.LINEAR_INPUT),
        (RNNMode.LSTM, DirectionMode.BIDIRECTIONAL, RNNInputMode.LINEAR_INPUT),
        (RNNMode.LSTM, DirectionMode.UNIDIRECTIONAL, RNNInputMode.SKIP_INPUT),
    ],
)
def test_unsupported_configurations(mode, direction, input_mode):
    handle = Handle()
    dropout_desc = DropoutDescriptor()
    dropout_desc.set(handle, 0.0, _bytes(handle.dropout_get_states_size()), 1337)
    with pytest.raises(AcceleratorError) as excinfo:
        RNNDescriptor().set(4, 1, dropout_desc, input_mode, direction, mode, torch.float32)
    assert excinfo.value.status == Status.NOT_SUPPORTED


def test_dropout_states_must_be_sized_by_query():
    handle = Handle()
    with pytest.raises(AcceleratorError) as excinfo:
        DropoutDescriptor().set(handle, 0.5, _bytes(16), 1337)
    assert excinfo.value.status == Status.BAD_PARAM


def test_scratch_sizes_scale_with_sequence_and_batch():
    handle, d = _descriptor_set("lstm", dropout=0.3)
    rnn = d.rnn_desc

    def sizes(T, B):
        descs = d.step_descriptors(B, d.input_size, T)
        return handle.get_rnn_workspace_size(rnn, T, descs), handle.get_rnn_training_reserve_size(rnn, T, descs)

    work_3, reserve_3 = sizes(3, 2)
    work_6, reserve_6 = sizes(6, 2)
    work_batch, reserve_batch = sizes(3, 4)
    assert work_6 == 2 * work_3
    assert reserve_6 == 2 * reserve_3
    assert work_batch == 2 * work_3
    assert reserve_batch == 2 * reserve_3


def test_undersized_workspace_is_rejected():
    handle, d = _descriptor_set()
    T, B = 4, 2
    x_descs = d.step_descriptors(B, d.input_size, T)
    y_descs = d.step_descriptors(B, d.hidden_size, T)
    s = d.state_descriptor(B)
    w = torch.zeros(d.weight_numel, dtype=torch.float64)
    x = torch.zeros(T, B, d.input_size, dtype=torch.float64)
    y = torch.empty(T, B, d.hidden_size, dtype=torch.float64)
    short = handle.get_rnn_workspace_size(d.rnn_desc, T, x_descs) - 1
    with pytest.raises(AcceleratorError) as excinfo:
        handle.rnn_forward_inference(
            d.rnn_desc, T, x_descs, x, s, None, s, None, d.w_desc, w, y_descs, y, s, None, s, None, _bytes(short)
        )
    assert excinfo.value.status == Status.BAD_PARAM


def test_undersized_reserve_is_rejected():
    handle, d = _descriptor_set()
    T, B = 4, 2
    x_descs = d.step_descriptors(B, d.input_size, T)
    y_descs = d.step_descriptors(B, d.hidden_size, T)
    s = d.state_descriptor(B)
    w = torch.zeros(d.weight_numel, dtype=torch.float64)
    x = torch.zeros(T, B, d.input_size, dtype=torch.float64)
    y = torch.empty(T, B, d.hidden_size, dtype=torch.float64)
    workspace = _bytes(handle.get_rnn_workspace_size(d.rnn_desc, T, x_descs))
    # reserve sized for a shorter sequence
    stale = _bytes(handle.get_rnn_training_reserve_size(d.rnn_desc, T - 1, x_descs))
    with pytest.raises(AcceleratorError) as excinfo:
        handle.rnn_forward_training(
            d.rnn_desc, T, x_descs, x, s, None, s, None, d.w_desc, w, y_descs, y, s, None, s, None, workspace, stale
        )
    assert excinfo.value.status == Status.BAD_PARAM


def test_varying_step_batch_is_not_supported():
    handle, d = _descriptor_set()
    descs = d.step_descriptors(3, d.input_size, 1) + d.step_descriptors(2, d.input_size, 1)
    with pytest.raises(AcceleratorError) as excinfo:
        handle.get_rnn_workspace_size(d.rnn_desc, 2, descs)
    assert excinfo.value.status == Status.NOT_SUPPORTED


def test_missing_initial_state_means_zeros():
    torch.manual_seed(0)
    handle, d = _descriptor_set()
    T, B = 3, 2
    w = d.new_weight()
    d.initialize_weights(w)
    x = torch.randn(T, B, d.input_size, dtype=torch.float64)
    zeros = torch.zeros(d.num_layers, B, d.hidden_size, dtype=torch.float64)
    _, y_zeros, hy_zeros, cy_zeros = _train_forward(handle, d, x, zeros, zeros, w)

    x_descs = d.step_descriptors(B, d.input_size, T)
    y_descs = d.step_descriptors(B, d.hidden_size, T)
    s = d.state_descriptor(B)
    workspace = _bytes(handle.get_rnn_workspace_size(d.rnn_desc, T, x_descs))
    y = torch.empty(T, B, d.hidden_size, dtype=torch.float64)
    hy = torch.empty_like(zeros)
    handle.rnn_forward_inference(
        d.rnn_desc, T, x_descs, x, s, None, s, None, d.w_desc, w, y_descs, y, s, hy, s, None, workspace
    )
    torch.testing.assert_close(y, y_zeros)
    torch.testing.assert_close(hy, hy_zeros)


def test_backward_weights_accumulates():
    torch.manual_seed(1)
    handle, d = _descriptor_set()
    T, B = 3, 2
    w = d.new_weight()
    d.initialize_weights(w)
    x = torch.randn(T, B, d.input_size, dtype=torch.float64)
    hx = torch.randn(d.num_layers, B, d.hidden_size, dtype=torch.float64)
    cx = torch.randn_like(hx)
    (x_descs, y_descs, s, workspace, reserve), y, _, _ = _train_forward(handle, d, x, hx, cx, w)

    dy = torch.randn_like(y)
    dx = torch.empty_like(x)
    handle.rnn_backward_data(
        d.rnn_desc, T, y_descs, y, y_descs, dy, s, None, s, None, d.w_desc, w,
        s, hx, s, cx, x_descs, dx, s, None, s, None, workspace, reserve,
    )
    dw = torch.zeros_like(w)
    handle.rnn_backward_weights(d.rnn_desc, T, x_descs, x, s, hx, y_descs, y, workspace, d.w_desc, dw, reserve)
    once = dw.clone()
    handle.rnn_backward_weights(d.rnn_desc, T, x_descs, x, s, hx, y_descs, y, workspace, d.w_desc, dw, reserve)
    assert once.abs().sum() > 0
    torch.testing.assert_close(dw, 2 * once)
    assert handle.call_counts["backward_weights"] == 2


def test_non_lstm_cell_state_outputs_are_zero():
    torch.manual_seed(2)
    handle, d = _descriptor_set("rnn_tanh")
    w = d.new_weight()
    d.initialize_weights(w)
    x = torch.randn(2, 3, d.input_size, dtype=torch.float64)
    hx = torch.randn(d.num_layers, 3, d.hidden_size, dtype=torch.float64)
    cx = torch.randn_like(hx)
    _, _, _, cy = _train_forward(handle, d, x, hx, cx, w)
    assert torch.equal(cy, torch.zeros_like(cy))


def test_dropout_masks_advance_between_calls():
    torch.manual_seed(3)
    handle, d = _descriptor_set("lstm", hidden_size=16, num_layers=2, dropout=0.5)
    w = d.new_weight()
    d.initialize_weights(w)
    x = torch.randn(4, 3, d.input_size, dtype=torch.float64)
    hx = torch.zeros(d.num_layers, 3, d.hidden_size, dtype=torch.float64)
    _, y_first, _, _ = _train_forward(handle, d, x, hx, hx, w)
    _, y_second, _, _ = _train_forward(handle, d, x, hx, hx, w)
    assert not torch.equal(y_first, y_second)

    # same seed, same masks
    handle_b, d_b = _descriptor_set("lstm", hidden_size=16, num_layers=2, dropout=0.5)
    _, y_replay, _, _ = _train_forward(handle_b, d_b, x, hx, hx, w)
    assert torch.equal(y_first, y_replay)
