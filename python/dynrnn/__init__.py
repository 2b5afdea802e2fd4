"""Dynamic-shape recurrent operators over an accelerator RNN API."""

from .accelerator import AcceleratorError, Handle, RNNMode, Status
from .batched import BatchedSequenceOperator, DescriptorBundle
from .cell import SingleStepCell
from .descriptors import RnnDescriptorSet
from .dynamic_rnn import DynamicRNN, dynamic_rnn
from .gradcheck import finite_difference_gradient
from .gradients import GradientBuffer, GradientState
from .graph import Differentiable, Executor, Symbol, Variable, VariableKind
from .nodes import IteratedRnnNode, RnnCellNode, RnnDynamicNode, RnnNode
from .rnn_type import LstmRnnType, RnnReluType, RnnTanhType, RnnType, get_rnn_type
from .unrolled import UnrolledRecord, UnrolledSequenceOperator

__all__ = [
    "AcceleratorError",
    "BatchedSequenceOperator",
    "DescriptorBundle",
    "Differentiable",
    "DynamicRNN",
    "Executor",
    "GradientBuffer",
    "GradientState",
    "Handle",
    "IteratedRnnNode",
    "LstmRnnType",
    "RNNMode",
    "RnnCellNode",
    "RnnDescriptorSet",
    "RnnDynamicNode",
    "RnnNode",
    "RnnReluType",
    "RnnTanhType",
    "RnnType",
    "SingleStepCell",
    "Status",
    "Symbol",
    "UnrolledRecord",
    "UnrolledSequenceOperator",
    "Variable",
    "VariableKind",
    "dynamic_rnn",
    "finite_difference_gradient",
    "get_rnn_type",
]
