"""
Recommendation & Ranking Engine - Core Algorithms

Latent factor recommender, sparse cosine similarity, BM25 document ranking,
MinHash Jaccard estimation and user-based collaborative filtering, with
input validation, logging, reader/writer locking and offline evaluation.
"""

import hashlib
import logging
import math
import re
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set, Tuple, Union

import numpy as np
import polars as pl
from scipy.sparse import csr_matrix
from sklearn.metrics.pairwise import cosine_similarity

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Constants
DEFAULT_K = 10
DEFAULT_N_FACTORS = 10
DEFAULT_LEARNING_RATE = 0.01
DEFAULT_REGULARIZATION = 0.02
DEFAULT_MAX_ITERATIONS = 100
CONVERGENCE_RMSE = 0.001
DEFAULT_DIVERGENCE_PATIENCE = 5
DEFAULT_DIVERGENCE_TOLERANCE = 0.1
DEFAULT_BM25_K1 = 1.5
DEFAULT_BM25_B = 0.75
DEFAULT_NUM_HASHES = 128
MINHASH_PRIME = 2 ** 31 - 1  # Mersenne prime
EMPTY_SIGNATURE_VALUE = MINHASH_PRIME
SIGNATURE_CHUNK_SIZE = 4096
DEFAULT_NEIGHBORHOOD_SIZE = 20
RANDOM_SEED = 42

RATING_COLUMNS = ['userId', 'itemId', 'rating']
TOKEN_RE = re.compile(r"\w+(?:'\w+)?")


class DataValidationError(Exception):
    """Raised when input data fails validation"""
    pass


class ModelNotTrainedError(Exception):
    """Raised when attempting to evaluate an untrained model"""
    pass


class TrainingDivergedError(Exception):
    """Raised when SGD training error grows instead of shrinking"""
    pass


class DocumentIndexError(IndexError):
    """Raised when a BM25 document index is outside the corpus"""
    pass


class SignatureMismatchError(ValueError):
    """Raised when MinHash signatures do not match the hash family size"""
    pass


class Rating(NamedTuple):
    """A single (user, item, value) interaction"""
    user_id: int
    item_id: int
    value: float


RatingsInput = Union[pl.DataFrame, Iterable[Tuple[int, int, float]]]


class ReadWriteLock:
    """
    Writer-preferring reader/writer lock

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so ingestion cannot starve.
    The lock is not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer_active or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._cond:
                self._writer_active = False
                self._cond.notify_all()


def validate_dataframe_schema(df: pl.DataFrame, required_columns: List[str]) -> None:
    """
    Validate that DataFrame has required columns

    Args:
        df: Polars DataFrame to validate
        required_columns: List of required column names

    Raises:
        DataValidationError: If validation fails
    """
    missing_cols = set(required_columns) - set(df.columns)
    if missing_cols:
        raise DataValidationError(
            f"DataFrame missing required columns: {sorted(missing_cols)}. "
            f"Found columns: {df.columns}"
        )
    logger.debug(f"DataFrame schema validation passed for columns: {required_columns}")


def validate_k_parameter(k: int, name: str = 'k') -> None:
    """
    Validate a result-size parameter (k, n, limit)

    Raises:
        ValueError: If the value is not a positive integer
    """
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise ValueError(f"{name} must be an integer, got {type(k)}")
    if k < 1:
        raise ValueError(f"{name} must be positive, got {k}")


def _validate_rating_value(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise DataValidationError(f"Rating value must be numeric, got {value!r}") from e
    if not math.isfinite(value):
        raise DataValidationError(f"Rating value must be finite, got {value}")
    return value


def ratings_from_frame(df: pl.DataFrame) -> List[Rating]:
    """
    Convert a ratings DataFrame into Rating tuples

    Args:
        df: Polars DataFrame with userId, itemId, rating columns

    Returns:
        List of Rating tuples in row order

    Raises:
        DataValidationError: If DataFrame schema is invalid
    """
    validate_dataframe_schema(df, RATING_COLUMNS)
    return [
        Rating(user_id, item_id, _validate_rating_value(value))
        for user_id, item_id, value in zip(
            df['userId'].to_list(), df['itemId'].to_list(), df['rating'].to_list()
        )
    ]


def _coerce_ratings(ratings: RatingsInput) -> List[Rating]:
    if isinstance(ratings, pl.DataFrame):
        return ratings_from_frame(ratings)

    samples = []
    for entry in ratings:
        try:
            user_id, item_id, value = entry
        except (TypeError, ValueError) as e:
            raise DataValidationError(
                f"Ratings must be (user_id, item_id, value) triples, got {entry!r}"
            ) from e
        samples.append(Rating(user_id, item_id, _validate_rating_value(value)))
    return samples


def tokenize(text: str) -> List[str]:
    """Split free text into lower-cased word tokens"""
    return TOKEN_RE.findall(text.lower())


def _normalize_terms(terms: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(terms, str):
        return tokenize(terms)
    return [term.lower() for term in terms]


def _rank_by_score(pairs: List[Tuple[Hashable, float]]) -> List[Tuple[Hashable, float]]:
    """
    Sort (key, score) pairs by descending score, ties by ascending key

    Keys that cannot be ordered against each other (e.g. int and str) keep
    their input order within a tie.
    """
    try:
        return sorted(pairs, key=lambda x: (-x[1], x[0]))
    except TypeError:
        logger.debug("Keys are not mutually orderable, breaking ties by input order")
        return sorted(pairs, key=lambda x: -x[1])


def _mean_rating(ratings: Dict[int, float]) -> float:
    return sum(ratings.values()) / len(ratings)


class MatrixFactorization:
    """
    Latent factor model trained with stochastic gradient descent

    Decomposes the sparse rating matrix R ≈ U·Vᵗ by minimizing
    Σ(r_ui − u·v)² + λ(‖u‖² + ‖v‖²) one rating at a time.
    """

    def __init__(
        self,
        num_factors: int = DEFAULT_N_FACTORS,
        learning_rate: float = DEFAULT_LEARNING_RATE,
        regularization: float = DEFAULT_REGULARIZATION,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        random_state: int = RANDOM_SEED,
        tolerance: float = CONVERGENCE_RMSE,
        divergence_patience: int = DEFAULT_DIVERGENCE_PATIENCE,
        divergence_tolerance: float = DEFAULT_DIVERGENCE_TOLERANCE
    ):
        """
        Initialize matrix factorization model

        Args:
            num_factors: Number of latent factors (k)
            learning_rate: SGD step size
            regularization: L2 regularization strength (λ)
            max_iterations: Maximum number of training epochs
            random_state: Seed for initialization and shuffling
            tolerance: Epoch RMSE below which training stops early
            divergence_patience: Consecutive rising epochs tolerated before aborting
            divergence_tolerance: Relative margin above the best RMSE that counts as rising
        """
        if num_factors <= 0:
            raise ValueError(f"num_factors must be positive, got {num_factors}")
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        if regularization < 0:
            raise ValueError(f"regularization must be non-negative, got {regularization}")
        if max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        if tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {tolerance}")
        if divergence_patience <= 0:
            raise ValueError(f"divergence_patience must be positive, got {divergence_patience}")
        if divergence_tolerance < 0:
            raise ValueError(f"divergence_tolerance must be non-negative, got {divergence_tolerance}")

        self.num_factors = num_factors
        self.lr = learning_rate
        self.reg = regularization
        self.max_iterations = max_iterations
        self.random_state = random_state
        self.tolerance = tolerance
        self.divergence_patience = divergence_patience
        self.divergence_tolerance = divergence_tolerance

        self.user_factors: Optional[np.ndarray] = None
        self.item_factors: Optional[np.ndarray] = None
        self.user_map: Dict[int, int] = {}
        self.item_map: Dict[int, int] = {}
        self.rmse_history: List[float] = []
        self._item_ids: List[int] = []
        self._is_trained = False
        self._lock = ReadWriteLock()

    @property
    def is_trained(self) -> bool:
        return self._is_trained

    @property
    def num_users(self) -> int:
        with self._lock.read_lock():
            return len(self.user_map)

    @property
    def num_items(self) -> int:
        with self._lock.read_lock():
            return len(self.item_map)

    def train(self, ratings: RatingsInput) -> 'MatrixFactorization':
        """
        Train latent factors from scratch

        Factor tables are built privately and swapped in under the write
        lock, so concurrent readers see either the previous model or the
        complete new one. A diverged run leaves the previous model in place.

        Args:
            ratings: Iterable of (user_id, item_id, value) tuples, or a
                Polars DataFrame with userId, itemId, rating columns

        Returns:
            self for method chaining

        Raises:
            DataValidationError: If ratings are empty or malformed
            TrainingDivergedError: If the epoch RMSE blows up
        """
        samples = _coerce_ratings(ratings)
        if not samples:
            raise DataValidationError("Cannot train on an empty ratings collection")

        logger.info(f"Training matrix factorization with {len(samples):,} ratings")

        # Index order is first appearance in the training data
        user_map = {u: idx for idx, u in enumerate(dict.fromkeys(r.user_id for r in samples))}
        item_map = {i: idx for idx, i in enumerate(dict.fromkeys(r.item_id for r in samples))}
        n_users = len(user_map)
        n_items = len(item_map)

        # Xavier-style initialization: N(0, 1) * sqrt(2 / (fan_in + fan_out))
        rng = np.random.default_rng(self.random_state)
        init_scale = np.sqrt(2.0 / (n_users + n_items))
        user_factors = rng.normal(0.0, 1.0, (n_users, self.num_factors)) * init_scale
        item_factors = rng.normal(0.0, 1.0, (n_items, self.num_factors)) * init_scale

        user_idx = np.array([user_map[r.user_id] for r in samples])
        item_idx = np.array([item_map[r.item_id] for r in samples])
        values = np.array([r.value for r in samples], dtype=float)

        history: List[float] = []
        best_rmse = np.inf
        rising_epochs = 0

        for epoch in range(self.max_iterations):
            order = rng.permutation(len(samples))
            try:
                with np.errstate(over='raise', invalid='raise'):
                    rmse = self._run_epoch(order, user_idx, item_idx, values, user_factors, item_factors)
            except FloatingPointError as e:
                logger.error(f"Numeric overflow in epoch {epoch + 1}, aborting training")
                raise TrainingDivergedError(
                    f"Training diverged in epoch {epoch + 1}: {e}. Try a smaller learning_rate"
                ) from e

            history.append(rmse)
            if not np.isfinite(rmse):
                logger.error(f"Non-finite RMSE in epoch {epoch + 1}, aborting training")
                raise TrainingDivergedError(f"Training diverged in epoch {epoch + 1}: RMSE is {rmse}")

            if (len(history) > 1 and rmse > history[-2]
                    and rmse > best_rmse * (1 + self.divergence_tolerance)):
                rising_epochs += 1
            else:
                rising_epochs = 0
            best_rmse = min(best_rmse, rmse)

            if rising_epochs >= self.divergence_patience:
                logger.error(
                    f"RMSE rose for {rising_epochs} consecutive epochs "
                    f"(best {best_rmse:.4f}, current {rmse:.4f}), aborting training"
                )
                raise TrainingDivergedError(
                    f"Training diverged: RMSE increased for {rising_epochs} consecutive epochs "
                    f"(best {best_rmse:.4f}, epoch {epoch + 1}: {rmse:.4f})"
                )

            if (epoch + 1) % 5 == 0:
                logger.debug(f"Completed epoch {epoch + 1}/{self.max_iterations}, RMSE: {rmse:.4f}")

            if rmse < self.tolerance:
                logger.info(f"Converged after {epoch + 1} epochs (RMSE {rmse:.6f})")
                break

        with self._lock.write_lock():
            self.user_map = user_map
            self.item_map = item_map
            self.user_factors = user_factors
            self.item_factors = item_factors
            self.rmse_history = history
            self._item_ids = list(item_map)
            self._is_trained = True

        logger.info(
            f"Matrix factorization training complete: {n_users:,} users, {n_items:,} items, "
            f"{len(history)} epochs, final RMSE {history[-1]:.4f}"
        )
        return self

    def _run_epoch(
        self,
        order: np.ndarray,
        user_idx: np.ndarray,
        item_idx: np.ndarray,
        values: np.ndarray,
        user_factors: np.ndarray,
        item_factors: np.ndarray
    ) -> float:
        total_error = 0.0
        for idx in order:
            u = user_idx[idx]
            i = item_idx[idx]

            # Both updates read the pre-update vectors
            user_vec = user_factors[u].copy()
            item_vec = item_factors[i].copy()

            error = values[idx] - user_vec @ item_vec
            total_error += error * error

            user_factors[u] += self.lr * (error * item_vec - self.reg * user_vec)
            item_factors[i] += self.lr * (error * user_vec - self.reg * item_vec)

        return float(np.sqrt(total_error / len(order)))

    def predict(self, user_id: int, item_id: int) -> float:
        """
        Predict rating for user-item pair

        Returns 0.0 when either id was not seen during training.
        """
        with self._lock.read_lock():
            u = self.user_map.get(user_id)
            i = self.item_map.get(item_id)
            if u is None or i is None:
                logger.debug(f"Unknown user {user_id} or item {item_id}, returning 0")
                return 0.0
            return float(self.user_factors[u] @ self.item_factors[i])

    def recommend(
        self,
        user_id: int,
        n: int = DEFAULT_K,
        exclude_items: Optional[Set[int]] = None
    ) -> List[int]:
        """
        Generate top-n recommendations for user

        Args:
            user_id: User ID
            n: Number of recommendations
            exclude_items: Set of items to exclude (e.g., already rated)

        Returns:
            Item IDs ordered by descending score, ties by ascending item ID.
            Empty for an unknown user.
        """
        validate_k_parameter(n, 'n')
        exclude_items = exclude_items or set()

        with self._lock.read_lock():
            u = self.user_map.get(user_id)
            if u is None:
                logger.warning(f"Unknown user {user_id}, cannot generate recommendations")
                return []
            scores = self.item_factors @ self.user_factors[u]
            candidates = [
                (item_id, float(score))
                for item_id, score in zip(self._item_ids, scores)
                if item_id not in exclude_items
            ]

        return [item_id for item_id, _ in _rank_by_score(candidates)[:n]]


class CosineSimilarity:
    """Cosine similarity over sparse {dimension: weight} vectors"""

    @staticmethod
    def _squared_norm(vector: Dict[int, float]) -> float:
        return sum(value * value for _, value in sorted(vector.items()))

    @staticmethod
    def compute(vector_a: Dict[int, float], vector_b: Dict[int, float]) -> float:
        """
        Cosine similarity between two sparse vectors

        Sums run in ascending dimension order, which makes the result
        exactly symmetric and exactly 1.0 for a vector against itself.

        Returns:
            Similarity in [-1, 1]; 0.0 if either vector has zero norm

        Raises:
            DataValidationError: If either vector holds a NaN or infinite weight
        """
        norm_a = CosineSimilarity._squared_norm(vector_a)
        norm_b = CosineSimilarity._squared_norm(vector_b)
        if not (math.isfinite(norm_a) and math.isfinite(norm_b)):
            raise DataValidationError("Vector weights must be finite")
        if norm_a == 0 or norm_b == 0:
            return 0.0

        shared = sorted(vector_a.keys() & vector_b.keys())
        dot_product = sum(vector_a[dim] * vector_b[dim] for dim in shared)
        similarity = dot_product / math.sqrt(norm_a * norm_b)
        return max(-1.0, min(1.0, similarity))

    @staticmethod
    def find_similar(
        target: Hashable,
        item_vectors: Dict[Hashable, Dict[int, float]],
        k: int = DEFAULT_K
    ) -> List[Hashable]:
        """
        Find the k entries most similar to target by brute-force scan

        Args:
            target: Key of the query vector inside item_vectors
            item_vectors: Mapping of key to sparse vector
            k: Number of neighbors to return

        Returns:
            Keys ordered by descending similarity, ties by ascending key.
            Empty if target is not in item_vectors.
        """
        validate_k_parameter(k)
        target_vector = item_vectors.get(target)
        if target_vector is None:
            logger.debug(f"Target {target!r} not found among {len(item_vectors)} vectors")
            return []

        similarities = [
            (key, CosineSimilarity.compute(target_vector, vector))
            for key, vector in item_vectors.items()
            if key != target
        ]
        return [key for key, _ in _rank_by_score(similarities)[:k]]

    @staticmethod
    def similarity_matrix(
        item_vectors: Dict[Hashable, Dict[int, float]]
    ) -> Tuple[List[Hashable], np.ndarray]:
        """
        All-pairs cosine similarity for precomputing item neighborhoods

        Args:
            item_vectors: Mapping of key to sparse vector

        Returns:
            Tuple of (keys, matrix) where matrix[i, j] is the similarity of
            keys[i] and keys[j]. Zero vectors score 0 against everything.
        """
        keys = list(item_vectors)
        if not keys:
            return keys, np.zeros((0, 0))

        dims = sorted({dim for vector in item_vectors.values() for dim in vector})
        column = {dim: j for j, dim in enumerate(dims)}

        rows, cols, data = [], [], []
        for r, key in enumerate(keys):
            for dim, weight in item_vectors[key].items():
                rows.append(r)
                cols.append(column[dim])
                data.append(weight)

        matrix = csr_matrix((data, (rows, cols)), shape=(len(keys), max(len(dims), 1)))
        return keys, cosine_similarity(matrix)


class BM25:
    """
    BM25 (Okapi) probabilistic ranking over an append-only corpus

    Score(D, Q) = Σ IDF(q) · tf·(k1 + 1) / (tf + k1·(1 − b + b·|D|/avgdl))
    with IDF(q) = ln((N − df + 0.5)/(df + 0.5) + 1).
    """

    def __init__(self, k1: float = DEFAULT_BM25_K1, b: float = DEFAULT_BM25_B):
        """
        Initialize BM25 ranker

        Args:
            k1: Term frequency saturation (typically 1.2-2.0)
            b: Length normalization strength in [0, 1]
        """
        if k1 < 0:
            raise ValueError(f"k1 must be non-negative, got {k1}")
        if not 0 <= b <= 1:
            raise ValueError(f"b must be in [0, 1], got {b}")

        self.k1 = k1
        self.b = b
        self.documents: List[Counter] = []
        self.doc_lengths: List[int] = []
        self.document_frequencies: Dict[str, int] = {}
        self._total_length = 0
        self._lock = ReadWriteLock()

    @property
    def num_documents(self) -> int:
        with self._lock.read_lock():
            return len(self.documents)

    @property
    def avg_doc_length(self) -> float:
        with self._lock.read_lock():
            return self._avg_doc_length()

    def _avg_doc_length(self) -> float:
        if not self.documents:
            return 0.0
        return self._total_length / len(self.documents)

    def document_frequency(self, term: str) -> int:
        with self._lock.read_lock():
            return self.document_frequencies.get(term.lower(), 0)

    def idf(self, term: str) -> float:
        """Smoothed IDF of a term; 0.0 if the term is not in the corpus"""
        with self._lock.read_lock():
            return self._idf(self.document_frequencies.get(term.lower(), 0))

    def _idf(self, df: int) -> float:
        if df == 0:
            return 0.0
        n_docs = len(self.documents)
        # +1 keeps IDF non-negative for terms present in every document
        return math.log((n_docs - df + 0.5) / (df + 0.5) + 1)

    def add_document(self, terms: Union[str, Iterable[str]]) -> int:
        """
        Add a document to the index

        Args:
            terms: Token list, or raw text to tokenize

        Returns:
            Index of the new document
        """
        term_freq = Counter(_normalize_terms(terms))
        length = sum(term_freq.values())

        with self._lock.write_lock():
            for term in term_freq:
                self.document_frequencies[term] = self.document_frequencies.get(term, 0) + 1
            self.documents.append(term_freq)
            self.doc_lengths.append(length)
            self._total_length += length
            doc_index = len(self.documents) - 1

        logger.debug(f"Indexed document {doc_index} ({length} terms, {len(term_freq)} distinct)")
        return doc_index

    def _score(self, query_terms: List[str], doc_index: int) -> float:
        avg_length = self._avg_doc_length()
        if avg_length == 0:
            return 0.0

        doc = self.documents[doc_index]
        length_norm = 1 - self.b + self.b * self.doc_lengths[doc_index] / avg_length

        score = 0.0
        for term in query_terms:
            tf = doc.get(term, 0)
            df = self.document_frequencies.get(term, 0)
            if tf == 0 or df == 0:
                continue
            score += self._idf(df) * (tf * (self.k1 + 1)) / (tf + self.k1 * length_norm)
        return score

    def score(self, query: Union[str, Iterable[str]], doc_index: int) -> float:
        """
        BM25 score of a query against one document

        Raises:
            DocumentIndexError: If doc_index is not a valid document index
        """
        query_terms = _normalize_terms(query)
        with self._lock.read_lock():
            if not 0 <= doc_index < len(self.documents):
                raise DocumentIndexError(
                    f"Document index {doc_index} out of range for corpus of {len(self.documents)} documents"
                )
            return self._score(query_terms, doc_index)

    def search(self, query: Union[str, Iterable[str]], limit: int = DEFAULT_K) -> List[int]:
        """
        Rank documents against a query

        Args:
            query: Query terms, or raw text to tokenize
            limit: Maximum number of results

        Returns:
            Indices of documents with positive score, best first, ties by index
        """
        validate_k_parameter(limit, 'limit')
        query_terms = _normalize_terms(query)

        with self._lock.read_lock():
            scored = []
            for doc_index in range(len(self.documents)):
                score = self._score(query_terms, doc_index)
                if score > 0:
                    scored.append((doc_index, score))

        scored.sort(key=lambda x: (-x[1], x[0]))
        return [doc_index for doc_index, _ in scored[:limit]]


def _element_to_int(element) -> int:
    if isinstance(element, (int, np.integer)):
        return int(element)
    if isinstance(element, str):
        element = element.encode('utf-8')
    if isinstance(element, bytes):
        # Stable across processes, unlike hash()
        return int.from_bytes(hashlib.blake2b(element, digest_size=8).digest(), 'big')
    raise TypeError(f"MinHash elements must be int, str or bytes, got {type(element).__name__}")


class MinHash:
    """
    MinHash signatures for approximate Jaccard similarity

    Uses num_hashes affine hash functions h(x) = (a·x + b) mod p over the
    Mersenne prime p = 2^31 − 1. P(min h(A) = min h(B)) = J(A, B), so the
    fraction of agreeing signature positions estimates J with standard
    error O(1/√num_hashes).
    """

    def __init__(self, num_hashes: int = DEFAULT_NUM_HASHES, seed: int = RANDOM_SEED):
        """
        Initialize hash family

        Args:
            num_hashes: Signature length
            seed: Seed for drawing the (a, b) coefficients
        """
        validate_k_parameter(num_hashes, 'num_hashes')

        self.num_hashes = int(num_hashes)
        self.seed = seed

        rng = np.random.default_rng(seed)
        self._a = rng.integers(1, MINHASH_PRIME, size=self.num_hashes, dtype=np.int64)
        self._b = rng.integers(0, MINHASH_PRIME, size=self.num_hashes, dtype=np.int64)
        self._a.setflags(write=False)
        self._b.setflags(write=False)

    @property
    def hash_coefficients(self) -> np.ndarray:
        """(num_hashes, 2) array of (a, b) pairs"""
        return np.column_stack([self._a, self._b])

    def compute_signature(self, elements: Iterable) -> np.ndarray:
        """
        Compute the MinHash signature of a set

        An empty set yields a signature filled with EMPTY_SIGNATURE_VALUE,
        which is larger than any real hash value.

        Args:
            elements: Integers, or str/bytes hashed to stable integers

        Returns:
            int64 array of length num_hashes
        """
        signature = np.full(self.num_hashes, EMPTY_SIGNATURE_VALUE, dtype=np.int64)

        # Reducing x mod p first keeps a·x + b below 2^63
        values = np.fromiter(
            (_element_to_int(element) % MINHASH_PRIME for element in set(elements)),
            dtype=np.int64
        )
        for start in range(0, len(values), SIGNATURE_CHUNK_SIZE):
            chunk = values[start:start + SIGNATURE_CHUNK_SIZE]
            hashes = (self._a[:, None] * chunk[None, :] + self._b[:, None]) % MINHASH_PRIME
            np.minimum(signature, hashes.min(axis=1), out=signature)

        return signature

    def estimate_similarity(self, sig_a: Sequence[int], sig_b: Sequence[int]) -> float:
        """
        Estimate Jaccard similarity from two signatures

        Raises:
            SignatureMismatchError: If either signature length differs from num_hashes
        """
        sig_a = np.asarray(sig_a)
        sig_b = np.asarray(sig_b)
        expected = (self.num_hashes,)
        if sig_a.shape != expected or sig_b.shape != expected:
            raise SignatureMismatchError(
                f"Signatures must have shape {expected}, got {sig_a.shape} and {sig_b.shape}"
            )
        return float(np.count_nonzero(sig_a == sig_b)) / self.num_hashes

    @staticmethod
    def exact_jaccard(set_a: Iterable, set_b: Iterable) -> float:
        """Exact Jaccard similarity, for validating estimates"""
        set_a = set(set_a)
        set_b = set(set_b)
        union = set_a | set_b
        if not union:
            return 0.0
        return len(set_a & set_b) / len(union)


class UserBasedCF:
    """
    User-based collaborative filtering with a k-nearest-neighbor approach

    r̂_ui = r̄_u + Σ sim(u,v)·(r_vi − r̄_v) / Σ |sim(u,v)|
    """

    def __init__(self, neighborhood_size: int = DEFAULT_NEIGHBORHOOD_SIZE):
        validate_k_parameter(neighborhood_size, 'neighborhood_size')

        self.neighborhood_size = neighborhood_size
        self.user_ratings: Dict[int, Dict[int, float]] = {}
        self._lock = ReadWriteLock()

    def add_rating(self, user_id: int, item_id: int, rating: float) -> None:
        """Store a rating; a repeated (user, item) pair replaces the old value"""
        rating = _validate_rating_value(rating)
        with self._lock.write_lock():
            self.user_ratings.setdefault(user_id, {})[item_id] = rating

    def add_ratings(self, ratings: RatingsInput) -> 'UserBasedCF':
        """
        Bulk-load ratings under a single write lock

        Args:
            ratings: Iterable of (user_id, item_id, value) tuples, or a
                Polars DataFrame with userId, itemId, rating columns

        Returns:
            self for method chaining
        """
        samples = _coerce_ratings(ratings)
        with self._lock.write_lock():
            for user_id, item_id, value in samples:
                self.user_ratings.setdefault(user_id, {})[item_id] = value
            n_users = len(self.user_ratings)
        logger.info(f"Loaded {len(samples):,} ratings, {n_users:,} users total")
        return self

    def user_mean(self, user_id: int) -> float:
        with self._lock.read_lock():
            ratings = self.user_ratings.get(user_id)
            return _mean_rating(ratings) if ratings else 0.0

    def predict_rating(self, user_id: int, item_id: int) -> float:
        """
        Predict a rating from the most similar users who rated the item

        Args:
            user_id: Target user ID
            item_id: Item to predict

        Returns:
            Predicted rating. Exactly the user's mean rating when no other
            user rated the item; 0.0 for a user with no ratings.
        """
        with self._lock.read_lock():
            target_ratings = self.user_ratings.get(user_id)
            if not target_ratings:
                logger.debug(f"Unknown user {user_id}, returning 0")
                return 0.0

            target_mean = _mean_rating(target_ratings)

            neighbors = []
            for other_id, other_ratings in self.user_ratings.items():
                if other_id == user_id or item_id not in other_ratings:
                    continue
                neighbors.append((other_id, CosineSimilarity.compute(target_ratings, other_ratings)))

            neighbors = _rank_by_score(neighbors)[:self.neighborhood_size]

            numerator = 0.0
            denominator = 0.0
            for neighbor_id, similarity in neighbors:
                neighbor_ratings = self.user_ratings[neighbor_id]
                numerator += similarity * (neighbor_ratings[item_id] - _mean_rating(neighbor_ratings))
                denominator += abs(similarity)

        if denominator == 0:
            return target_mean
        return target_mean + numerator / denominator


class EvaluationMetrics:
    """Ranking quality metrics over ordered id lists"""

    @staticmethod
    def precision_at_k(actual: Set[int], predicted: List[int], k: int = DEFAULT_K) -> float:
        """
        Precision@K: fraction of the top-k predictions that are relevant

        Args:
            actual: Set of relevant IDs
            predicted: Ranked list of predicted IDs
            k: Cutoff

        Returns:
            Precision@K in [0, 1]
        """
        validate_k_parameter(k)
        if not actual or not predicted:
            return 0.0
        top_k = predicted[:k]
        return len(actual.intersection(top_k)) / len(top_k)

    @staticmethod
    def recall_at_k(actual: Set[int], predicted: List[int], k: int = DEFAULT_K) -> float:
        """Recall@K: fraction of relevant IDs found in the top k"""
        validate_k_parameter(k)
        if not actual or not predicted:
            return 0.0
        return len(actual.intersection(predicted[:k])) / len(actual)

    @staticmethod
    def hit_rate_at_k(actual: Set[int], predicted: List[int], k: int = DEFAULT_K) -> float:
        validate_k_parameter(k)
        if not actual or not predicted:
            return 0.0
        return 1.0 if actual.intersection(predicted[:k]) else 0.0

    @staticmethod
    def ndcg_at_k(actual: Set[int], predicted: List[int], k: int = DEFAULT_K) -> float:
        """
        NDCG@K with binary relevance

        Returns:
            DCG of the prediction divided by DCG of an ideal ranking, in [0, 1]
        """
        validate_k_parameter(k)
        if not actual or not predicted:
            return 0.0

        dcg = sum(
            1.0 / np.log2(rank + 2)
            for rank, item in enumerate(predicted[:k])
            if item in actual
        )
        idcg = sum(1.0 / np.log2(rank + 2) for rank in range(min(len(actual), k)))
        return float(dcg / idcg) if idcg > 0 else 0.0

    @staticmethod
    def reciprocal_rank(actual: Set[int], predicted: List[int]) -> float:
        """1 / rank of the first relevant prediction, 0.0 if none"""
        for rank, item in enumerate(predicted, start=1):
            if item in actual:
                return 1.0 / rank
        return 0.0

    @staticmethod
    def catalog_coverage(all_recommendations: List[List[int]], catalog_size: int) -> float:
        """
        Catalog Coverage: share of the catalog recommended at least once

        Raises:
            ValueError: If catalog_size is not positive
        """
        if catalog_size <= 0:
            raise ValueError(f"catalog_size must be positive, got {catalog_size}")
        unique_items = set()
        for recs in all_recommendations:
            unique_items.update(recs)
        return len(unique_items) / catalog_size


def evaluate_recommender(
    model: MatrixFactorization,
    test_data: pl.DataFrame,
    train_data: pl.DataFrame,
    k: int = DEFAULT_K
) -> Dict[str, float]:
    """
    Evaluate top-k recommendations against held-out interactions

    Each warm-start user (present in train_data) gets recommendations that
    exclude their training items; these are scored against their test items.

    Args:
        model: Trained recommender with a recommend(user_id, n, exclude_items) method
        test_data: Held-out DataFrame with userId, itemId columns
        train_data: Training DataFrame with userId, itemId columns
        k: Number of recommendations to evaluate

    Returns:
        Dictionary of averaged metrics plus user counts

    Raises:
        ModelNotTrainedError: If model hasn't been trained
        DataValidationError: If DataFrames have invalid schema
    """
    if not getattr(model, 'is_trained', False):
        raise ModelNotTrainedError("Model must be trained before evaluation")
    validate_dataframe_schema(test_data, ['userId', 'itemId'])
    validate_dataframe_schema(train_data, ['userId', 'itemId'])
    validate_k_parameter(k)

    logger.info(f"Evaluating model on {len(test_data):,} held-out interactions")

    def _items_by_user(df: pl.DataFrame) -> Dict[int, Set[int]]:
        grouped = df.group_by('userId').agg(pl.col('itemId'))
        return {
            user_id: set(items)
            for user_id, items in zip(grouped['userId'].to_list(), grouped['itemId'].to_list())
        }

    user_train_items = _items_by_user(train_data)
    user_test_items = _items_by_user(test_data)

    metric_names = [f'precision@{k}', f'recall@{k}', f'hit_rate@{k}', f'ndcg@{k}', 'mrr']
    metrics: Dict[str, List[float]] = {name: [] for name in metric_names}

    cold_start_users = 0
    warm_start_users = 0
    evaluation_errors = 0

    for user_id in sorted(user_test_items):
        if user_id not in user_train_items:
            cold_start_users += 1
            continue

        warm_start_users += 1
        actual = user_test_items[user_id]

        try:
            predicted = model.recommend(user_id, k, exclude_items=user_train_items[user_id])
        except (ValueError, AttributeError) as e:
            logger.warning(f"Recommendation failed for user {user_id}: {e}")
            evaluation_errors += 1
            continue

        metrics[f'precision@{k}'].append(EvaluationMetrics.precision_at_k(actual, predicted, k))
        metrics[f'recall@{k}'].append(EvaluationMetrics.recall_at_k(actual, predicted, k))
        metrics[f'hit_rate@{k}'].append(EvaluationMetrics.hit_rate_at_k(actual, predicted, k))
        metrics[f'ndcg@{k}'].append(EvaluationMetrics.ndcg_at_k(actual, predicted, k))
        metrics['mrr'].append(EvaluationMetrics.reciprocal_rank(actual, predicted))

    if evaluation_errors > 0:
        logger.warning(f"Encountered {evaluation_errors} errors during evaluation")

    total_users = warm_start_users + cold_start_users
    coverage = warm_start_users / total_users if total_users > 0 else 0.0

    logger.info(f"Evaluation complete: {warm_start_users:,} warm-start users, "
                f"{cold_start_users:,} cold-start users ({coverage * 100:.1f}% coverage)")

    result = {name: float(np.mean(values)) if values else 0.0 for name, values in metrics.items()}
    result['warm_start_users'] = warm_start_users
    result['cold_start_users'] = cold_start_users
    result['coverage'] = coverage
    result['evaluation_errors'] = evaluation_errors
    return result


def prediction_rmse(predict, ratings: RatingsInput) -> float:
    """
    Root mean squared error of a rating predictor over held-out ratings

    Args:
        predict: Callable (user_id, item_id) -> float, e.g.
            MatrixFactorization.predict or UserBasedCF.predict_rating
        ratings: Iterable of (user_id, item_id, value) tuples or a ratings DataFrame

    Returns:
        RMSE of predictions against the given values

    Raises:
        DataValidationError: If ratings are empty or malformed
    """
    samples = _coerce_ratings(ratings)
    if not samples:
        raise DataValidationError("Cannot compute RMSE over an empty ratings collection")

    errors = np.array([value - predict(user_id, item_id) for user_id, item_id, value in samples])
    return float(np.sqrt(np.mean(errors ** 2)))
