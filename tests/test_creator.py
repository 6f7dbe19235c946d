import io

import numpy as np
import pytest

from fbow.creator import CreatorParams, VocabularyCreator, vector_hash
from fbow.distance import DescriptorType


def _random_binary(n, nbytes=32, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(n, nbytes), dtype=np.uint8)


def _binary_groups(n_per=8, nbytes=32, seed=1):
    rng = np.random.default_rng(seed)
    low = np.zeros((n_per, nbytes), dtype=np.uint8)
    high = np.full((n_per, nbytes), 0xFF, dtype=np.uint8)
    for row in range(n_per):
        pos = rng.integers(0, nbytes)
        low[row, pos] ^= np.uint8(1 << int(rng.integers(0, 8)))
        high[row, pos] ^= np.uint8(1 << int(rng.integers(0, 8)))
    return low, high


def _float_groups(n_per=8, dim=8, seed=2):
    rng = np.random.default_rng(seed)
    low = rng.normal(0.0, 0.1, size=(n_per, dim)).astype(np.float32)
    high = (rng.normal(0.0, 0.1, size=(n_per, dim)) + 50.0).astype(np.float32)
    return low, high


def _single_word(vocabulary, row):
    bow = vocabulary.transform(row)
    assert len(bow) == 1
    return next(iter(bow))


def test_vector_hash_of_empty_groups_is_zero():
    assert vector_hash([]) == 0
    assert vector_hash([[], []]) == 0


def test_vector_hash_single_zero_index():
    assert vector_hash([[0]]) == 0x9E3779F8


def test_vector_hash_accepts_arrays_and_is_order_sensitive():
    as_lists = vector_hash([[1, 2], [3]])
    assert vector_hash([np.array([1, 2]), np.array([3])]) == as_lists
    assert 0 <= as_lists < 2**64
    assert vector_hash([[2, 1], [3]]) != as_lists


def test_few_binary_features_become_leaves_of_root():
    features = _random_binary(3)
    vocabulary = VocabularyCreator().create(features, "orb", CreatorParams(k=4))
    assert vocabulary.num_blocks == 1
    block = vocabulary.block(0)
    assert block.n == 3
    assert all(node.is_leaf for node in block.nodes)
    for index in range(3):
        assert vocabulary.transform(features[index]) == {index: 1.0}


def test_vocabulary_keeps_descriptor_description():
    features = _random_binary(20)
    vocabulary = VocabularyCreator().create(features, "orb", CreatorParams(k=4))
    assert vocabulary.is_valid()
    assert vocabulary.desc_name == "orb"
    assert vocabulary.k == 4
    assert vocabulary.desc_size == 32
    assert vocabulary.desc_type == DescriptorType.BINARY
    assert vocabulary.params.alignment == 8


def test_unlimited_depth_maps_every_feature_to_itself():
    features = _random_binary(50)
    vocabulary = VocabularyCreator().create(features, "orb", CreatorParams(k=4))
    assert vocabulary.num_blocks > 1
    for index in range(len(features)):
        assert vocabulary.transform(features[index]) == {index: 1.0}


def test_feature_list_is_treated_as_one_set():
    features = _random_binary(30)
    params = CreatorParams(k=3)
    whole = VocabularyCreator().create(features, "orb", params)
    split = VocabularyCreator().create([features[:10], features[10:]], "orb", params)
    assert whole.hash() == split.hash()


def test_binary_groups_split_into_two_words():
    low, high = _binary_groups()
    features = np.vstack([low, high])
    vocabulary = VocabularyCreator().create(
        features, "orb", CreatorParams(k=2, levels=1)
    )
    assert vocabulary.num_blocks == 1
    low_words = {_single_word(vocabulary, row) for row in low}
    high_words = {_single_word(vocabulary, row) for row in high}
    assert len(low_words) == 1
    assert len(high_words) == 1
    assert low_words != high_words
    assert low_words | high_words == {0, 1}


def test_float_groups_split_into_two_words():
    low, high = _float_groups()
    features = np.vstack([low, high])
    vocabulary = VocabularyCreator().create(
        features, "surf", CreatorParams(k=2, levels=1)
    )
    assert vocabulary.desc_type == DescriptorType.FLOAT
    assert vocabulary.params.alignment == 32
    low_words = {_single_word(vocabulary, row) for row in low}
    high_words = {_single_word(vocabulary, row) for row in high}
    assert len(low_words) == 1
    assert len(high_words) == 1
    assert low_words.isdisjoint(high_words)


def test_few_float_features_map_to_themselves():
    features = np.array(
        [[0.0, 1.0, 2.0, 3.0], [10.0, 11.0, 12.0, 13.0], [-5.0, 4.0, 0.5, 8.0]],
        dtype=np.float32,
    )
    vocabulary = VocabularyCreator().create(features, "float", CreatorParams(k=4))
    assert vocabulary.desc_size == 16
    for index in range(3):
        assert vocabulary.transform(features[index]) == {index: 1.0}


def test_level_limit_gives_single_block_of_leaves():
    features = _random_binary(50)
    vocabulary = VocabularyCreator().create(
        features, "orb", CreatorParams(k=4, levels=1)
    )
    assert vocabulary.num_blocks == 1
    block = vocabulary.block(0)
    assert block.n == 4
    assert all(node.is_leaf for node in block.nodes)
    for row in features[:10]:
        assert _single_word(vocabulary, row) in range(4)


def test_creation_is_reproducible():
    features = _random_binary(60)
    params = CreatorParams(k=3, seed=7)
    first = VocabularyCreator().create(features, "orb", params)
    second = VocabularyCreator().create(features, "orb", params)
    assert first.hash() == second.hash()


def test_threads_give_same_vocabulary():
    features = _random_binary(60)
    serial = VocabularyCreator().create(features, "orb", CreatorParams(k=3))
    threaded = VocabularyCreator().create(
        features, "orb", CreatorParams(k=3, nthreads=4)
    )
    assert serial.hash() == threaded.hash()
    assert serial.num_blocks == threaded.num_blocks


def test_zero_iterations_still_builds_usable_vocabulary():
    features = _random_binary(40)
    vocabulary = VocabularyCreator().create(
        features, "orb", CreatorParams(k=4, max_iters=0)
    )
    for row in features[:10]:
        bow = vocabulary.transform(row)
        assert list(bow.values()) == [1.0]


def test_created_vocabulary_survives_stream_round_trip():
    features = _random_binary(25)
    vocabulary = VocabularyCreator().create(features, "orb", CreatorParams(k=4))
    buffer = io.BytesIO()
    vocabulary.to_stream(buffer)
    buffer.seek(0)
    from fbow.vocabulary import Vocabulary

    loaded = Vocabulary()
    loaded.from_stream(buffer)
    assert loaded.hash() == vocabulary.hash()
    assert loaded.transform(features[5]) == {5: 1.0}


def test_rejects_unsupported_dtype():
    features = np.zeros((4, 8), dtype=np.int16)
    with pytest.raises(ValueError):
        VocabularyCreator().create(features, "bad", CreatorParams(k=2))


def test_rejects_empty_input():
    with pytest.raises(ValueError):
        VocabularyCreator().create([], "orb", CreatorParams(k=2))
    with pytest.raises(ValueError):
        VocabularyCreator().create(
            np.zeros((0, 32), dtype=np.uint8), "orb", CreatorParams(k=2)
        )
    with pytest.raises(ValueError):
        VocabularyCreator().create(
            np.zeros((3, 0), dtype=np.uint8), "orb", CreatorParams(k=2)
        )


def test_rejects_mismatched_matrices():
    first = _random_binary(5, nbytes=32)
    second = _random_binary(5, nbytes=16)
    with pytest.raises(ValueError):
        VocabularyCreator().create([first, second], "orb", CreatorParams(k=2))


def test_rejects_branching_below_two():
    with pytest.raises(ValueError):
        VocabularyCreator().create(_random_binary(5), "orb", CreatorParams(k=1))