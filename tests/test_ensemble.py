"""Tests for ensemble aggregation and running statistics."""

import numpy as np
import pytest
import qutip

from qfluct.ensemble import (
    EnsembleAggregator,
    ExecutionMode,
    RunningStatistics,
    expectation,
    overlap,
    population,
)
from qfluct.errors import EnsembleFailure, IntegrationDivergence
from qfluct.hamiltonian import Constant, HamiltonianModel
from qfluct.integrator import TrajectoryIntegrator
from qfluct.noise import FluctuatorEnsemble, FluctuatorRealization, TelegraphRealization

SIGMA_Z = np.diag([1.0, -1.0])
SIGMA_X = np.array([[0.0, 1.0], [1.0, 0.0]])
PLUS = np.array([1.0, 1.0], dtype=complex) / np.sqrt(2)
KET0 = np.array([1.0, 0.0], dtype=complex)


def noisy_integrator():
    """Qubit under σz dephasing from a small fluctuator ensemble."""
    H = HamiltonianModel([(Constant(0.5), SIGMA_Z)], unit="hbar")
    noise = FluctuatorEnsemble([0.4, 0.3], [1.0, 4.0])
    return TrajectoryIntegrator(H, couplings=[SIGMA_Z], noise=noise)


class FlakyIntegrator(TrajectoryIntegrator):
    """Fails on every third call, sharing the call counter across copies."""

    def __init__(self, *args, calls, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = calls

    def run(self, *args, **kwargs):
        self.calls.append(None)
        if len(self.calls) % 3 == 0:
            raise IntegrationDivergence(0.0, 1.0, "forced")
        return super().run(*args, **kwargs)


class CorruptedEnsemble(FluctuatorEnsemble):
    """Every second sampled realization carries a non-finite amplitude."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.draws = 0

    def sample_realization(self, t_f, rng=None):
        noise = super().sample_realization(t_f, rng)
        self.draws += 1
        if self.draws % 2 == 0:
            bad = [
                TelegraphRealization(np.nan, tg.initial_sign, tg.switch_times, tg.t_f)
                for tg in noise.telegraphs
            ]
            noise = FluctuatorRealization(telegraphs=tuple(bad), t_f=noise.t_f)
        return noise


def flaky(calls):
    H = HamiltonianModel([(1.0, SIGMA_Z)], unit="hbar")
    return FlakyIntegrator(H, calls=calls)


# ==================================================================
# RUNNING STATISTICS
# ==================================================================


class TestRunningStatistics:
    """Tests for the mergeable mean/variance accumulator."""

    def test_matches_numpy(self):
        """Mean and Bessel-corrected std should match numpy."""
        values = np.array([1.0, 2.0, 3.0, 4.0])
        acc = RunningStatistics()
        for v in values:
            acc.update([v])
        stats = acc.statistics([0.0])
        np.testing.assert_allclose(stats.mean, [2.5])
        np.testing.assert_allclose(stats.std, [np.std(values, ddof=1)])
        np.testing.assert_allclose(stats.standard_error, [np.std(values, ddof=1) / 2])
        assert stats.n_trajectories == 4

    def test_merge_equals_single_pass(self):
        """Merging two partial accumulators equals one pass over all rows."""
        rng = np.random.default_rng(0)
        rows = rng.normal(size=(9, 5))
        single = RunningStatistics()
        for r in rows:
            single.update(r)
        left, right = RunningStatistics(), RunningStatistics()
        for r in rows[:4]:
            left.update(r)
        for r in rows[4:]:
            right.update(r)
        merged = left.merge(right)
        assert merged.count == 9
        np.testing.assert_allclose(merged.mean, single.mean)
        np.testing.assert_allclose(merged.m2, single.m2)

    def test_merge_with_empty(self):
        """Merging with an empty accumulator is the identity."""
        acc = RunningStatistics().update([1.0, 2.0])
        np.testing.assert_array_equal(RunningStatistics().merge(acc).mean, [1.0, 2.0])
        np.testing.assert_array_equal(acc.merge(RunningStatistics()).mean, [1.0, 2.0])

    def test_single_trajectory_nan_error(self):
        """The standard error is undefined for one trajectory."""
        stats = RunningStatistics().update([0.3, 0.4]).statistics([0.0, 1.0])
        assert np.all(np.isnan(stats.standard_error))
        np.testing.assert_allclose(stats.mean, [0.3, 0.4])

    def test_complex_values_rejected(self):
        """Observables with an imaginary part cannot be averaged."""
        with pytest.raises(ValueError, match="real-valued"):
            RunningStatistics().update([1.0 + 0.5j])

    def test_shape_change_rejected(self):
        """All updates must share one shape."""
        acc = RunningStatistics().update([1.0, 2.0])
        with pytest.raises(ValueError):
            acc.update([1.0])

    def test_empty_statistics_raises(self):
        """Statistics need at least one trajectory."""
        with pytest.raises(ValueError):
            RunningStatistics().statistics([0.0])

    def test_statistics_compare_by_identity(self):
        """Comparing statistics records should return a bool, not raise."""
        acc = RunningStatistics().update([1.0, 2.0]).update([2.0, 3.0])
        first, second = acc.statistics([0.0, 1.0]), acc.statistics([0.0, 1.0])
        assert first == first
        assert first != second
        assert len({first, second}) == 2


# ==================================================================
# OBSERVABLES
# ==================================================================


class TestObservables:
    """Tests for built-in observable factories."""

    def test_population_ket_and_density(self):
        """Populations work for kets and density matrices."""
        rho = np.outer(PLUS, PLUS.conj())
        assert population(0)(PLUS) == pytest.approx(0.5)
        assert population(1)(rho) == pytest.approx(0.5)

    def test_expectation_qobj(self):
        """Qobj operators give real expectation values."""
        obs = expectation(qutip.sigmax())
        assert obs(PLUS) == pytest.approx(1.0)
        assert obs(np.outer(PLUS, PLUS.conj())) == pytest.approx(1.0)

    def test_overlap(self):
        """Squared and complex overlaps with a target ket."""
        assert overlap(PLUS)(KET0) == pytest.approx(0.5)
        assert overlap(PLUS, squared=False)(KET0) == pytest.approx(1 / np.sqrt(2))
        assert overlap(qutip.basis(2, 0))(np.outer(KET0, KET0)) == pytest.approx(1.0)

    def test_complex_overlap_of_density_matrix_raises(self):
        """A complex overlap is undefined for density matrices."""
        with pytest.raises(ValueError, match="density matrices"):
            overlap(PLUS, squared=False)(np.outer(KET0, KET0))

    def test_complex_overlap_rejected_before_contraction(self):
        """The density-matrix check happens before any shape-dependent product."""
        with pytest.raises(ValueError, match="density matrices"):
            overlap(PLUS, squared=False)(np.eye(3))


# ==================================================================
# AGGREGATION
# ==================================================================


class TestAggregator:
    """Tests for ensemble runs and execution modes."""

    def test_zero_noise_zero_error(self):
        """Without noise every trajectory is identical."""
        H = HamiltonianModel([(1.0, SIGMA_X)], unit="hbar")
        agg = EnsembleAggregator(TrajectoryIntegrator(H), n_trajectories=5)
        t = np.linspace(0, 1, 11)
        result = agg.run(KET0, t, population(0), seed=1)
        np.testing.assert_array_equal(result.statistics.standard_error, 0.0)
        np.testing.assert_allclose(result.statistics.mean, np.cos(t) ** 2, atol=1e-7)
        assert result.n_failed == 0

    def test_dephasing_reduces_coherence(self):
        """Noise should spread trajectories and give a nonzero error."""
        agg = EnsembleAggregator(noisy_integrator(), n_trajectories=40)
        t = np.linspace(0, 4, 9)
        result = agg.run(PLUS, t, SIGMA_X, seed=3)
        assert result.statistics.mean[0] == pytest.approx(1.0)
        assert np.all(np.abs(result.statistics.mean) <= 1.0 + 1e-9)
        assert np.all(result.statistics.standard_error[1:] > 0)

    @pytest.mark.parametrize("mode", ["threads", "processes"])
    def test_modes_agree(self, mode):
        """Parallel execution should reproduce the serial statistics exactly."""
        t = np.linspace(0, 2, 5)
        serial = EnsembleAggregator(noisy_integrator(), 6, chunk_size=2).run(
            PLUS, t, population(0), seed=11
        )
        parallel = EnsembleAggregator(
            noisy_integrator(), 6, mode=mode, max_workers=2, chunk_size=2
        ).run(PLUS, t, population(0), seed=11)
        np.testing.assert_array_equal(parallel.statistics.mean, serial.statistics.mean)
        np.testing.assert_array_equal(
            parallel.statistics.standard_error, serial.statistics.standard_error
        )

    def test_seed_reproducible(self):
        """Equal root seeds should give equal statistics."""
        t = np.linspace(0, 2, 5)
        a = EnsembleAggregator(noisy_integrator(), 4).run(PLUS, t, SIGMA_X, seed=5)
        b = EnsembleAggregator(noisy_integrator(), 4).run(PLUS, t, SIGMA_X, seed=5)
        np.testing.assert_array_equal(a.statistics.mean, b.statistics.mean)

    def test_run_trajectories(self):
        """Per-trajectory output should carry states and realizations."""
        agg = EnsembleAggregator(noisy_integrator(), 3, mode=ExecutionMode.THREADS)
        trajectories, failures = agg.run_trajectories(PLUS, [0.0, 1.0], seed=2)
        assert len(trajectories) == 3 and failures == []
        assert trajectories[0].states.shape == (2, 2)
        assert len(trajectories[0].realizations) == 1


class TestFailurePolicy:
    """Tests for handling trajectories that fail to integrate."""

    def test_skip_counts_failures(self):
        """Skipped trajectories are counted and excluded from the statistics."""
        calls = []
        agg = EnsembleAggregator(flaky(calls), 6, on_failure="skip")
        result = agg.run(KET0, [0.0, 1.0], population(0), seed=0)
        assert result.n_failed == 2
        assert result.statistics.n_trajectories == 4
        assert [f.index for f in result.failures] == [2, 5]

    def test_skip_real_divergence(self):
        """Trajectories whose noise is non-finite diverge in the integrator and are skipped."""
        H = HamiltonianModel([(Constant(0.5), SIGMA_Z)], unit="hbar")
        noise = CorruptedEnsemble([0.4], [2.0])
        integ = TrajectoryIntegrator(H, couplings=[SIGMA_X], noise=noise)
        agg = EnsembleAggregator(integ, 6, on_failure="skip")
        t = np.linspace(0, 1, 5)
        result = agg.run(PLUS, t, population(0), seed=4)

        assert result.n_failed == 3
        assert result.statistics.n_trajectories == 3
        assert [f.index for f in result.failures] == [1, 3, 5]
        for failure in result.failures:
            assert isinstance(failure.error, IntegrationDivergence)
            assert failure.error.t_end == 1.0
        assert np.all(np.isfinite(result.statistics.mean))

    def test_real_divergence_raises_by_default(self):
        """Under the default policy a real divergence aborts the ensemble."""
        H = HamiltonianModel([(Constant(0.5), SIGMA_Z)], unit="hbar")
        integ = TrajectoryIntegrator(
            H, couplings=[SIGMA_X], noise=CorruptedEnsemble([0.4], [2.0])
        )
        with pytest.raises(EnsembleFailure) as excinfo:
            EnsembleAggregator(integ, 4).run_trajectories(PLUS, [0.0, 1.0], seed=4)
        assert [f.index for f in excinfo.value.failures] == [1, 3]

    def test_raise_aborts(self):
        """The default policy raises once all trajectories have finished."""
        agg = EnsembleAggregator(flaky([]), 6)
        with pytest.raises(EnsembleFailure) as excinfo:
            agg.run(KET0, [0.0, 1.0], population(0), seed=0)
        assert len(excinfo.value.failures) == 2

    def test_all_failed_raises_even_when_skipping(self):
        """With no successful trajectory there are no statistics to report."""
        calls = [None, None]
        agg = EnsembleAggregator(flaky(calls), 1, on_failure="skip")
        with pytest.raises(EnsembleFailure):
            agg.run(KET0, [0.0, 1.0], population(0))


class TestValidation:
    """Tests for aggregator argument validation."""

    def test_invalid_arguments(self):
        """Bad sizes, policies and modes should raise ValueError."""
        integ = noisy_integrator()
        with pytest.raises(ValueError):
            EnsembleAggregator(integ, 0)
        with pytest.raises(ValueError):
            EnsembleAggregator(integ, 2, on_failure="ignore")
        with pytest.raises(ValueError):
            EnsembleAggregator(integ, 2, chunk_size=0)
        with pytest.raises(ValueError):
            EnsembleAggregator(integ, 2, mode="gpu")
