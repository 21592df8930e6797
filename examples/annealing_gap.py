"""Example: spectral gap of a two-qubit annealing Hamiltonian.

H(s) = (1 - s) * sum_i X_i + s * (Z_1 Z_2 + 0.3 Z_1), swept over s with the
dense and Lanczos eigensolvers.
"""

import numpy as np
import qutip

from qfluct import HamiltonianModel, lanczos_eigen_solver

X = qutip.tensor(qutip.sigmax(), qutip.qeye(2)) + qutip.tensor(qutip.qeye(2), qutip.sigmax())
ZZ = qutip.tensor(qutip.sigmaz(), qutip.sigmaz())
Z1 = qutip.tensor(qutip.sigmaz(), qutip.qeye(2))


def driver(s):
    return 1 - s


def problem(s):
    return s


terms = [(driver, X), (problem, ZZ), (problem, 0.3 * Z1)]
dense = HamiltonianModel(terms)
lanczos = HamiltonianModel(terms, eigen_solver=lanczos_eigen_solver)

for s in np.linspace(0, 1, 6):
    w = dense.eigen_decompose(s, 2).eigenvalues
    w_l = lanczos.eigen_decompose(s, 2).eigenvalues
    print(f"s={s:.1f}  gap={w[1] - w[0]:.5f}  (lanczos {w_l[1] - w_l[0]:.5f})")
