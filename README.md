# fbow

Bag-of-words vocabularies for image feature descriptors, built on numpy.

A vocabulary is a tree of visual words. It is built by hierarchical k-means.
It turns a set of feature descriptors into a sparse, weighted bag of words,
and two bags of words can be compared quickly.

Two kinds of descriptor are supported:

- binary descriptors: `uint8` rows, such as ORB or AKAZE. These are compared by Hamming distance.
- float descriptors: `float32` rows, such as SURF. These are compared by squared L2 distance.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Building a vocabulary

```python
import numpy as np
from fbow.creator import CreatorParams, VocabularyCreator

features = np.random.default_rng(0).integers(0, 256, size=(5000, 32), dtype=np.uint8)

params = CreatorParams(k=10, levels=4, seed=1)
vocabulary = VocabularyCreator().create(features, "orb", params)
vocabulary.save_to_file("orb.fbow")
```

`create` accepts either one 2-D array or a list of arrays, such as one per image.
All the arrays must have the same dtype and the same number of columns.

The fields of `CreatorParams` are:

- `k`: the branching factor. It must be at least 2.
- `levels`: the maximum depth of the tree. `-1` means no limit.
- `nthreads`: the number of worker threads. It is capped at 100.
- `max_iters`: the number of k-means iterations for each node.
- `verbose`: if set, progress is printed to stderr.
- `seed`: makes the random choice of the first cluster centre reproducible.

## Transforming features

```python
from fbow.bow import BagOfWords
from fbow.vocabulary import Vocabulary

vocabulary = Vocabulary()
vocabulary.read_from_file("orb.fbow")

bow1 = vocabulary.transform(features_of_image_1)
bow2 = vocabulary.transform(features_of_image_2)
similarity = BagOfWords.score(bow1, bow2)   # in [0, 1]
```

`Vocabulary.transform` returns a bag of words normalised to unit L2 norm.

`Vocabulary.transform_with_level(features, level)` returns a pair:

1. The bag of words, not normalised. Call `normalized()` on it if needed.
2. A `BagOfWordsIndex`. It maps each tree node at depth `level` to the
   indices of the feature rows that passed through that node.

The features passed in must match the vocabulary in two ways:

- Their dtype must match the vocabulary's descriptor type.
- Their size in bytes per row must match the vocabulary's descriptor size.

If either does not match, a `ValueError` is raised.

## Distances

`fbow.distance` provides the following:

- `hamming_distance(a, b)`
- `l2_distance(a, b)`, which returns the squared distance.
- `distance_function(desc_type)`, which picks one of the two for a `DescriptorType`.
- `DescriptorType.from_array(features)`, which reads the type from an array's dtype.

## Serialisation

`BagOfWords` and `BagOfWordsIndex` have these methods:

- `to_stream(stream)` writes to a binary stream.
- `from_stream(stream)` reads back from it. It is a class method.
- `hash()` gives a 64-bit fingerprint of the contents.

Vocabularies are stored in a binary format: a signature, then a parameter record, then the raw blocks. The `Vocabulary` methods for this are:

- `to_stream` and `from_stream`
- `save_to_file` and `read_from_file`
- `hash()`, which fingerprints the block data.

Reading a stream whose signature is wrong raises `ValueError`.

## What it does not do

This package works on descriptors that already exist. It does not:

- extract features from images;
- run an image-retrieval index or a localisation service on top of the bags of words;
- provide a command-line tool.