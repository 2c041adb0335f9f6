import pytest
import torch

from recur import BoundaryFlag, load_demo_minibatches, pack_sequences, synthesize_sequences
from recur.data_helper import next_frame_targets


def _seq(length: int, offset: float) -> torch.Tensor:
    return (torch.arange(length, dtype=torch.float32) + offset).unsqueeze(1)


def test_pack_assigns_shortest_stream_and_flags_boundaries():
    sequences = [_seq(3, 0.0), _seq(5, 100.0), _seq(2, 200.0)]
    batches = pack_sequences(sequences, num_streams=2, minibatch_frames=4)
    assert len(batches) == 2

    first, second = batches
    assert first.features.shape == (1, 8)
    # stream 0 holds sequence 0 then sequence 2; stream 1 holds sequence 1
    assert first.features[0, 0::2].tolist() == [0.0, 1.0, 2.0, 200.0]
    assert first.features[0, 1::2].tolist() == [100.0, 101.0, 102.0, 103.0]

    layout = first.layout
    assert layout.flags(0, 0) == BoundaryFlag.SEQUENCE_START
    assert layout.flags(0, 2) == BoundaryFlag.SEQUENCE_END
    assert layout.flags(0, 3) == BoundaryFlag.SEQUENCE_START
    assert layout.flags(1, 3) == BoundaryFlag.NONE

    layout = second.layout
    assert layout.flags(0, 0) == BoundaryFlag.SEQUENCE_END
    assert layout.flags(1, 0) == BoundaryFlag.SEQUENCE_END
    for t in range(1, 4):
        assert layout.flags(0, t) == BoundaryFlag.NO_INPUT
        assert layout.flags(1, t) == BoundaryFlag.NO_INPUT
    assert second.features[0, 0].item() == 201.0


def test_single_frame_sequence_gets_both_flags():
    batches = pack_sequences([_seq(1, 0.0)], num_streams=1, minibatch_frames=2, no_label_last=True)
    flags = batches[0].layout.flags(0, 0)
    assert flags == BoundaryFlag.SEQUENCE_START | BoundaryFlag.SEQUENCE_END | BoundaryFlag.NO_LABEL
    assert batches[0].layout.flags(0, 1) == BoundaryFlag.NO_INPUT


def test_pack_validates_inputs():
    with pytest.raises(ValueError):
        pack_sequences([], num_streams=1, minibatch_frames=2)
    with pytest.raises(ValueError):
        pack_sequences([_seq(2, 0.0)], num_streams=0, minibatch_frames=2)
    with pytest.raises(ValueError):
        pack_sequences([torch.zeros(2, 1), torch.zeros(2, 3)], num_streams=1, minibatch_frames=2)
    with pytest.raises(ValueError):
        pack_sequences([_seq(2, 0.0)], num_streams=1, minibatch_frames=2, targets=[_seq(3, 0.0)])


def test_targets_follow_features():
    sequences = [_seq(3, 0.0), _seq(2, 10.0)]
    batches = pack_sequences(sequences, 2, 3, targets=next_frame_targets(sequences))
    targets = batches[0].targets
    assert targets.shape == (1, 6)
    assert targets[0, 0::2].tolist() == [1.0, 2.0, 0.0]
    assert targets[0, 1::2].tolist() == [11.0, 0.0, 0.0]


def test_synthesized_data_is_deterministic():
    a = synthesize_sequences(4, 2, seed=3)
    b = synthesize_sequences(4, 2, seed=3)
    assert all(torch.equal(x, y) for x, y in zip(a, b))
    assert all(4 <= seq.shape[0] <= 16 for seq in a)


def test_demo_minibatches_respect_overrides():
    batches = load_demo_minibatches(config={"num_streams": 2}, minibatch_frames=5, feature_dim=3)
    assert all(batch.num_streams == 2 and batch.num_frames == 5 for batch in batches)
    assert batches[0].feature_dim == 3
    assert batches[0].targets.shape == batches[0].features.shape
    assert "minibatch 0" in batches[0].describe()
