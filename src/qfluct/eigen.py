"""Pluggable eigendecomposition strategies for time-dependent Hamiltonians.

A strategy factory receives the owning Hamiltonian's :class:`HamiltonianCache`
and returns a solver with the signature::

    solve(evaluator, t, level_count) -> (eigenvalues, eigenvectors)

``evaluator`` maps a time to the Hamiltonian matrix. The returned eigenvalues
must be ascending with length ``level_count`` and the eigenvectors must be the
matching columns of a ``(d, level_count)`` array. Any callable following this
contract can replace the built-in factories below, e.g. a wrapper around an
Arnoldi/Lanczos routine from another library.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from qutip import Qobj
from scipy import linalg, sparse
from scipy.sparse.linalg import eigsh

from qfluct.errors import SolverContractViolation

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

__all__ = [
    "EigenResult",
    "HamiltonianCache",
    "dense_eigen_solver",
    "sparse_eigen_solver",
    "lanczos_eigen_solver",
    "qutip_eigen_solver",
    "validate_eigen_output",
]


@dataclass(frozen=True, eq=False)
class EigenResult:
    """Lowest eigenpairs of a Hamiltonian at one instant.

    Attributes
    ----------
    eigenvalues : NDArray[np.floating]
        Ascending eigenvalues, shape ``(level_count,)``.
    eigenvectors : NDArray[np.complexfloating]
        Matching eigenvector columns, shape ``(d, level_count)``.
    """

    eigenvalues: "NDArray[np.floating]"
    eigenvectors: "NDArray[np.complexfloating]"

    @property
    def level_count(self) -> int:
        return self.eigenvalues.shape[0]

    @property
    def dimension(self) -> int:
        return self.eigenvectors.shape[0]

    def __iter__(self):
        yield self.eigenvalues
        yield self.eigenvectors


class HamiltonianCache:
    """Last-evaluated matrix and eigen result of one Hamiltonian.

    The matrix entry is keyed by time and the eigen entry by
    ``(time, level_count)``. A query with different arguments replaces the
    stored entry. Not safe for concurrent ``eigen_decompose`` calls on the
    same Hamiltonian.
    """

    def __init__(self):
        self.clear()

    def clear(self) -> None:
        self.time = None
        self.matrix = None
        self.key = None
        self.result = None

    def matrix_at(self, evaluator, t: float):
        if self.time is None or self.time != t:
            self.matrix = evaluator(t)
            self.time = t
        return self.matrix

    def lookup(self, t: float, level_count: int) -> EigenResult | None:
        if self.key == (t, level_count):
            return self.result
        return None

    def store(self, t: float, level_count: int, result: EigenResult) -> None:
        self.key = (t, level_count)
        self.result = result


def _densify(matrix) -> "NDArray[np.complexfloating]":
    if sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix)


def _lowest_levels(w, v, level_count):
    # stable sort keeps the solver's ordering for degenerate levels
    order = np.argsort(w, kind="stable")[:level_count]
    return w[order], v[:, order]


def dense_eigen_solver(cache: HamiltonianCache):
    """Full Hermitian diagonalisation truncated to the lowest levels."""

    def solve(evaluator, t, level_count):
        matrix = _densify(cache.matrix_at(evaluator, t))
        w, v = linalg.eigh(matrix)
        return _lowest_levels(w, v, level_count)

    return solve


def sparse_eigen_solver(cache: HamiltonianCache):
    """Densify a sparse Hamiltonian and apply the dense strategy.

    This trades memory and speed for robustness. Supply
    :func:`lanczos_eigen_solver` (or a custom strategy) for large systems.
    """
    dense = dense_eigen_solver(cache)
    warned = False

    def solve(evaluator, t, level_count):
        nonlocal warned
        if not warned:
            logger.warning(
                "Sparse Hamiltonian is densified for eigendecomposition; "
                "install an iterative eigen_solver for large systems."
            )
            warned = True
        return dense(evaluator, t, level_count)

    return solve


def lanczos_eigen_solver(cache: HamiltonianCache, tol: float = 0.0, maxiter: int | None = None):
    """Implicitly restarted Lanczos (ARPACK ``eigsh``) for the lowest levels.

    ARPACK requires ``level_count < d - 1``; larger requests fall back to the
    dense path. Use :func:`functools.partial` to set ``tol`` or ``maxiter``
    before handing the factory to a Hamiltonian.
    """

    def solve(evaluator, t, level_count):
        matrix = cache.matrix_at(evaluator, t)
        d = matrix.shape[0]
        if level_count >= d - 1:
            logger.debug(
                "level_count=%s too large for ARPACK at d=%s, using dense eigh",
                level_count,
                d,
            )
            w, v = linalg.eigh(_densify(matrix))
        else:
            w, v = eigsh(matrix, k=level_count, which="SA", tol=tol, maxiter=maxiter)
        return _lowest_levels(w, v, level_count)

    return solve


def qutip_eigen_solver(cache: HamiltonianCache, sparse_solver: bool = False):
    """Eigendecomposition via :meth:`qutip.Qobj.eigenstates`."""

    def solve(evaluator, t, level_count):
        op = Qobj(_densify(cache.matrix_at(evaluator, t)))
        w, kets = op.eigenstates(sparse=sparse_solver, sort="low", eigvals=level_count)
        v = np.column_stack([ket.full().ravel() for ket in kets])
        return np.real(w), v

    return solve


def validate_eigen_output(output, level_count: int, dimension: int, atol: float = 1e-10) -> EigenResult:
    """Check a strategy's raw output against the strategy contract.

    Raises
    ------
    SolverContractViolation
        If the output is not a pair, the counts or shapes disagree, values are
        non-finite, eigenvalues carry an imaginary part, or they are not in
        non-decreasing order.
    """
    try:
        w, v = output
    except (TypeError, ValueError):
        raise SolverContractViolation(
            "Eigen solver must return an (eigenvalues, eigenvectors) pair.",
            output_type=type(output).__name__,
        ) from None

    w = np.asarray(w)
    v = np.asarray(v)
    if w.ndim != 1 or w.shape[0] != level_count:
        raise SolverContractViolation(
            f"Expected {level_count} eigenvalues, got shape {w.shape}.",
            eigenvalues_shape=w.shape,
            level_count=level_count,
        )
    if v.shape != (dimension, level_count):
        raise SolverContractViolation(
            f"Expected eigenvectors of shape {(dimension, level_count)}, got {v.shape}.",
            eigenvectors_shape=v.shape,
            eigenvalues_shape=w.shape,
        )
    if not (np.all(np.isfinite(w)) and np.all(np.isfinite(v))):
        raise SolverContractViolation("Eigen solver returned non-finite values.")
    if np.iscomplexobj(w):
        if np.max(np.abs(w.imag)) > atol:
            raise SolverContractViolation(
                "Eigenvalues of a Hermitian operator must be real.",
                max_imag=float(np.max(np.abs(w.imag))),
            )
        w = w.real
    if np.any(np.diff(w) < 0):
        raise SolverContractViolation(
            "Eigenvalues must be returned in ascending order.",
            eigenvalues=w.tolist(),
        )

    w = np.array(w, dtype=float)
    v = np.array(v, dtype=np.complex128)
    w.setflags(write=False)
    v.setflags(write=False)
    return EigenResult(eigenvalues=w, eigenvectors=v)
