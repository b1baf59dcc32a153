"""
Isolation Forest anomaly detector
Scores telemetry feature vectors against a model of normal driving

Algorithm overview:
- Builds an ensemble of random partition trees on bootstrap subsamples
- Anomalies are isolated in fewer splits, so their average path length is short
- Anomaly score = 2^(-E[h(x)] / c(n)) where c(n) is the average path length
  of an unsuccessful search in a binary search tree of n points
- Score near 1.0 indicates an anomaly, around 0.5 a normal sample

Reference: "Isolation Forest" by Fei Tony Liu et al.
"""

import logging
from functools import lru_cache
from typing import Iterable, List, Sequence

import numpy as np

from .anomaly_types import FEATURE_NAMES, FeatureVector

logger = logging.getLogger(__name__)

EULER_GAMMA = 0.5772156649
NEUTRAL_SCORE = 0.5


@lru_cache(maxsize=1024)
def average_path_length(n: int) -> float:
    """
    Average path length of an unsuccessful BST search over n samples

    Used both to normalize the ensemble path length and to correct
    the depth of leaves that still hold more than one sample.
    """
    if n <= 1:
        return 0.0
    return 2.0 * (np.log(n - 1) + EULER_GAMMA) - (2.0 * (n - 1)) / n


class _Leaf:
    __slots__ = ("size",)

    def __init__(self, size: int):
        self.size = size


class _Split:
    __slots__ = ("feature_index", "split_value", "left", "right")

    def __init__(self, feature_index: int, split_value: float, left, right):
        self.feature_index = feature_index
        self.split_value = split_value
        self.left = left  # samples < split_value
        self.right = right  # samples >= split_value


def _node_height(node) -> int:
    if node is None or isinstance(node, _Leaf):
        return 0
    return max(_node_height(node.left), _node_height(node.right)) + 1


class PartitionTree:
    """One randomized isolation tree"""

    def __init__(self, root):
        self.root = root
        self.height = _node_height(root)

    def path_length(self, values: Sequence[float]) -> float:
        """Depth at which values reach a leaf, plus the leaf size correction"""
        node = self.root
        depth = 0
        while isinstance(node, _Split):
            if values[node.feature_index] < node.split_value:
                node = node.left
            else:
                node = node.right
            depth += 1

        # Empty side of a split: nothing left to resolve below it
        if node is None:
            return float(depth)
        return depth + average_path_length(node.size)


class IsolationForest:
    """Isolation forest built from scratch over (speed, motion, delta_speed)"""

    def __init__(self, num_trees: int = 100, subsample_size: int = 256, max_tree_depth: int = 12):
        """
        Args:
            num_trees: Number of partition trees in the ensemble
            subsample_size: Bootstrap sample size per tree, also the n of c(n)
            max_tree_depth: Depth at which tree growth stops
        """
        if num_trees < 1 or subsample_size < 1 or max_tree_depth < 1:
            raise ValueError("num_trees, subsample_size and max_tree_depth must be >= 1")

        self.num_trees = int(num_trees)
        self.subsample_size = int(subsample_size)
        self.max_tree_depth = int(max_tree_depth)

        self._trees: List[PartitionTree] = []
        self._normalization = 0.0

    @classmethod
    def from_config(cls, config) -> "IsolationForest":
        return cls(
            num_trees=config.num_trees,
            subsample_size=config.subsample_size,
            max_tree_depth=config.max_tree_depth,
        )

    # FITTING

    def fit(self, corpus: Iterable[FeatureVector], rng=None) -> "IsolationForest":
        """
        Fit the forest on normal driving data

        Args:
            corpus: Feature vectors describing normal driving
            rng: None, an int seed or a numpy Generator (for reproducible trees)

        Returns:
            IsolationForest: self
        """
        data = self._as_matrix(corpus)
        logger.info("Fitting isolation forest on %d samples", data.shape[0])

        if data.shape[0] == 0:
            logger.warning("Empty training data: forest has no trees and will score every sample %.1f", NEUTRAL_SCORE)
            self._trees = []
            self._normalization = 0.0
            return self

        generator = np.random.default_rng(rng)
        sample_size = min(self.subsample_size, data.shape[0])

        trees = []
        for i in range(self.num_trees):
            # Bootstrap sample (with replacement)
            indices = generator.integers(0, data.shape[0], size=sample_size)
            trees.append(PartitionTree(self._grow(data[indices], 0, generator)))

            if (i + 1) % 10 == 0:
                logger.debug("Built tree %d/%d", i + 1, self.num_trees)

        self._trees = trees
        self._normalization = average_path_length(self.subsample_size)
        logger.info(
            "Isolation forest fitted: trees=%d sample_size=%d c(n)=%.4f",
            len(trees), sample_size, self._normalization,
        )
        return self

    def _grow(self, subset: np.ndarray, depth: int, generator: np.random.Generator):
        size = subset.shape[0]
        if depth >= self.max_tree_depth or size <= 1:
            return _Leaf(size)

        feature_index = int(generator.integers(0, len(FEATURE_NAMES)))
        column = subset[:, feature_index]
        low = column.min()
        high = column.max()

        # Constant feature: no valid split exists
        if low == high:
            return _Leaf(size)

        split_value = float(generator.uniform(low, high))
        mask = column < split_value
        left = subset[mask]
        right = subset[~mask]

        return _Split(
            feature_index,
            split_value,
            self._grow(left, depth + 1, generator) if left.shape[0] else None,
            self._grow(right, depth + 1, generator) if right.shape[0] else None,
        )

    @staticmethod
    def _as_matrix(corpus) -> np.ndarray:
        rows = [
            sample.as_tuple() if isinstance(sample, FeatureVector) else tuple(sample)
            for sample in corpus
        ]
        data = np.asarray(rows, dtype=float).reshape(-1, len(FEATURE_NAMES))

        finite = np.isfinite(data).all(axis=1)
        if not finite.all():
            logger.warning("Dropping %d non-finite training samples", int((~finite).sum()))
            data = data[finite]
        return data

    # SCORING

    def score(self, feature: FeatureVector) -> float:
        """
        Anomaly score of a single feature vector

        Score > 0.7 typically indicates an anomaly
        Score ~ 0.5 indicates normal
        Score < 0.3 indicates very normal

        Never raises and never mutates the forest.
        """
        trees = self._trees
        if not trees or self._normalization <= 0.0:
            logger.warning("Isolation forest has no trees, call fit() first. Returning neutral score")
            return NEUTRAL_SCORE

        try:
            values = feature.as_tuple()
        except (AttributeError, TypeError, ValueError) as e:
            logger.error("Cannot score feature %r: %s", feature, e)
            return NEUTRAL_SCORE

        avg_path_length = sum(tree.path_length(values) for tree in trees) / len(trees)
        score = 2.0 ** (-avg_path_length / self._normalization)
        return min(1.0, max(0.0, score))

    def score_many(self, features: Iterable[FeatureVector]) -> List[float]:
        """Batch anomaly scoring"""
        return [self.score(feature) for feature in features]

    # DIAGNOSTICS

    @property
    def tree_count(self) -> int:
        return len(self._trees)

    @property
    def is_fitted(self) -> bool:
        return bool(self._trees)

    @property
    def normalization(self) -> float:
        return self._normalization

    def tree_heights(self) -> List[int]:
        return [tree.height for tree in self._trees]

    def model_info(self) -> dict:
        return {
            "num_trees": len(self._trees),
            "subsample_size": self.subsample_size,
            "max_tree_depth": self.max_tree_depth,
            "avg_path_length_constant": self._normalization,
        }

