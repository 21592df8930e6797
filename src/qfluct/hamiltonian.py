"""Time-dependent Hamiltonians built from scalar-coefficient operator terms.

A :class:`HamiltonianModel` represents

    H(t) = Σ_i c_i(t) · O_i

where every ``O_i`` is a constant ``d×d`` operator (numpy array, scipy.sparse
matrix or :class:`qutip.Qobj`) and every ``c_i`` maps time to a real number.
Values are expressed in the model's unit (see :mod:`qfluct.units`); the
integrator consumes :meth:`HamiltonianModel.generator`, which is always in
angular frequency.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable

import numpy as np
from qutip import Qobj
from scipy import sparse

from qfluct.eigen import (
    EigenResult,
    HamiltonianCache,
    dense_eigen_solver,
    sparse_eigen_solver,
    validate_eigen_output,
)
from qfluct.errors import DimensionMismatch, LevelCountExceeded
from qfluct.units import unit_scale

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

__all__ = ["Constant", "HamiltonianModel", "as_operator", "eigen_decompose"]


class Constant:
    """Picklable constant coefficient function."""

    def __init__(self, value: float):
        self.value = float(value)

    def __call__(self, t: float) -> float:
        return self.value

    def __repr__(self) -> str:
        return f"Constant({self.value!r})"


def as_operator(op):
    """Normalise an operator to an immutable dense array or a CSR matrix."""
    if isinstance(op, Qobj):
        op = op.full()
    if sparse.issparse(op):
        return sparse.csr_matrix(op, dtype=np.complex128, copy=True)
    arr = np.array(op, dtype=np.complex128)
    arr.setflags(write=False)
    return arr


def _as_coefficient(c) -> Callable[[float], float]:
    if callable(c):
        return c
    return Constant(c)


class HamiltonianModel:
    """Sum of constant operators weighted by time-dependent coefficients.

    Parameters
    ----------
    terms : iterable of (coefficient, operator)
        Coefficients are callables ``t -> float`` or plain numbers.
    unit : {'h', 'hbar'}, default='h'
        Unit of the operator entries. ``'h'`` means ordinary frequency and
        the dynamics are scaled by 2π.
    eigen_solver : callable, optional
        Strategy factory ``cache -> solve(evaluator, t, level_count)``.
        Defaults to :func:`~qfluct.eigen.dense_eigen_solver`, or
        :func:`~qfluct.eigen.sparse_eigen_solver` when every operator is
        sparse.

    Attributes
    ----------
    dimension : int
        Hilbert-space dimension ``d``.
    sparse : bool
        True if every operator is a scipy.sparse matrix.
    cache : HamiltonianCache
        Last evaluated matrix and eigen result.

    Raises
    ------
    DimensionMismatch
        If an operator is not square or operators differ in size.

    Examples
    --------
    >>> import qutip
    >>> H = HamiltonianModel([(lambda t: 1 - t, qutip.sigmax()),
    ...                       (lambda t: t, qutip.sigmaz())])
    >>> w, v = H.eigen_decompose(0.5, 2)
    """

    def __init__(
        self,
        terms: Iterable,
        unit: str = "h",
        eigen_solver: Callable | None = None,
    ) -> None:
        terms = list(terms)
        if not terms:
            raise ValueError("At least one (coefficient, operator) term is required.")

        coefficients, operators = zip(*terms)
        operators = [as_operator(op) for op in operators]
        shapes = [op.shape for op in operators]
        if any(len(s) != 2 or s[0] != s[1] for s in shapes):
            raise DimensionMismatch("Hamiltonian operators must be square", shapes)
        if len(set(shapes)) != 1:
            raise DimensionMismatch("Hamiltonian operators differ in size", shapes)

        self.sparse = all(sparse.issparse(op) for op in operators)
        if not self.sparse:
            operators = [
                as_operator(op.toarray()) if sparse.issparse(op) else op
                for op in operators
            ]

        self.unit = unit
        self.scale = unit_scale(unit)
        self.dimension = shapes[0][0]
        self._coefficients = [_as_coefficient(c) for c in coefficients]
        self._operators = operators
        self._eigen_factory = eigen_solver or (
            sparse_eigen_solver if self.sparse else dense_eigen_solver
        )
        self.cache = HamiltonianCache()
        self._eigen_solver = self._eigen_factory(self.cache)

    # --- Pickling (process-parallel ensembles) ---
    def __getstate__(self):
        state = self.__dict__.copy()
        # solver closures are rebuilt from the factory
        del state["_eigen_solver"]
        state["cache"] = HamiltonianCache()
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._eigen_solver = self._eigen_factory(self.cache)

    @property
    def operators(self) -> list:
        return list(self._operators)

    @property
    def coefficients(self) -> list:
        return list(self._coefficients)

    def __len__(self) -> int:
        return len(self._operators)

    def __repr__(self) -> str:
        kind = "sparse" if self.sparse else "dense"
        return (
            f"HamiltonianModel(terms={len(self)}, dimension={self.dimension}, "
            f"unit='{self.unit}', {kind})"
        )

    def evaluate(self, t: float):
        """Return ``H(t)`` in the model's unit. Pure; does not touch the cache."""
        t = float(t)
        matrix = self._coefficients[0](t) * self._operators[0]
        for coefficient, op in zip(self._coefficients[1:], self._operators[1:]):
            matrix = matrix + coefficient(t) * op
        return matrix

    __call__ = evaluate

    def generator(self, t: float):
        """Return ``H(t)`` in angular frequency, as used by the dynamics."""
        return self.scale * self.evaluate(t)

    def is_hermitian(self, t: float, atol: float = 1e-10) -> bool:
        matrix = self.evaluate(t)
        if sparse.issparse(matrix):
            diff = matrix - matrix.conj().T
            return bool(diff.count_nonzero() == 0 or abs(diff).max() <= atol)
        return bool(np.allclose(matrix, matrix.conj().T, atol=atol))

    def eigen_decompose(self, t: float, level_count: int) -> EigenResult:
        """Return the lowest ``level_count`` eigenpairs of ``H(t)``.

        Parameters
        ----------
        t : float
            Evaluation time.
        level_count : int
            Number of levels, ``1 <= level_count <= dimension``.

        Returns
        -------
        EigenResult
            Ascending eigenvalues (model unit) and matching eigenvectors.

        Raises
        ------
        LevelCountExceeded
            If ``level_count`` exceeds the dimension.
        SolverContractViolation
            If the installed strategy breaks the output contract.
        """
        level_count = int(level_count)
        if level_count < 1:
            raise ValueError(f"level_count must be at least 1, got {level_count}.")
        if level_count > self.dimension:
            raise LevelCountExceeded(level_count, self.dimension)

        t = float(t)
        cached = self.cache.lookup(t, level_count)
        if cached is not None:
            return cached

        output = self._eigen_solver(self.evaluate, t, level_count)
        result = validate_eigen_output(output, level_count, self.dimension)
        self.cache.store(t, level_count, result)
        return result

    def check_operator(self, op, name: str = "operator"):
        """Normalise ``op`` and verify it matches the model dimension."""
        op = as_operator(op)
        if op.shape != (self.dimension, self.dimension):
            raise DimensionMismatch(
                f"{name} does not match the Hamiltonian dimension {self.dimension}",
                [op.shape],
            )
        if sparse.issparse(op) and not self.sparse:
            op = as_operator(op.toarray())
        elif self.sparse and not sparse.issparse(op):
            op = as_operator(sparse.csr_matrix(op))
        return op


def eigen_decompose(
    H: HamiltonianModel, t: float, level_count: int
) -> "tuple[NDArray[np.floating], NDArray[np.complexfloating]]":
    """Functional form of :meth:`HamiltonianModel.eigen_decompose`."""
    result = H.eigen_decompose(t, level_count)
    return result.eigenvalues, result.eigenvectors
