"""Tests for pulse schedules and pulse transforms."""

import numpy as np
import pytest
import qutip

from qfluct.errors import InvalidScheduleOrder
from qfluct.pulses import PulseSchedule, unitary_pulse, x_pulse, z_pulse

KET0 = np.array([1.0, 0.0], dtype=complex)
KET1 = np.array([0.0, 1.0], dtype=complex)


class TestScheduleOrdering:
    """Tests for PulseSchedule construction and ordering rules."""

    def test_decreasing_times_raise(self):
        """Decreasing pulse times should raise InvalidScheduleOrder."""
        with pytest.raises(InvalidScheduleOrder, match="strictly increasing"):
            PulseSchedule([0.5, 0.2], x_pulse())

    def test_duplicate_times_raise(self):
        """Two pulses at the same instant are ambiguous."""
        with pytest.raises(InvalidScheduleOrder) as excinfo:
            PulseSchedule([0.1, 0.3, 0.3], x_pulse())
        np.testing.assert_array_equal(excinfo.value.times, [0.1, 0.3, 0.3])

    def test_nan_time_raises(self):
        """Non-finite pulse times should be rejected."""
        with pytest.raises(InvalidScheduleOrder, match="finite"):
            PulseSchedule([0.1, np.nan], x_pulse())

    def test_empty_schedule_allowed(self):
        """An empty schedule has no pending pulse."""
        schedule = PulseSchedule([], x_pulse())
        assert len(schedule) == 0
        assert schedule.cursor().next_time is None

    def test_times_read_only(self):
        """Pulse times should not be modifiable after construction."""
        schedule = PulseSchedule([0.1, 0.2], x_pulse())
        with pytest.raises(ValueError):
            schedule.times[0] = 0.0

    def test_transform_count_mismatch(self):
        """One transform per pulse time is required."""
        with pytest.raises(ValueError):
            PulseSchedule([0.1, 0.2], [x_pulse()])

    def test_non_callable_transform(self):
        """Every transform must be callable."""
        with pytest.raises(TypeError):
            PulseSchedule([0.1, 0.2], [x_pulse(), "z"])

    def test_validate_span(self):
        """Pulses outside the evolution span should raise with the span attached."""
        schedule = PulseSchedule([0.0, 0.5, 1.0], x_pulse())
        schedule.validate_span(0.0, 1.0)
        with pytest.raises(InvalidScheduleOrder) as excinfo:
            schedule.validate_span(0.0, 0.9)
        assert excinfo.value.span == (0.0, 0.9)


class TestApply:
    """Tests for applying individual pulse transforms."""

    def test_apply_at_scheduled_time(self):
        """The transform scheduled at t should be applied."""
        schedule = PulseSchedule([0.2, 0.4], [x_pulse(), z_pulse()])
        np.testing.assert_allclose(schedule.apply_at(0.2, KET0), KET1)
        np.testing.assert_allclose(schedule.apply_at(0.4, KET1), -KET1)

    def test_apply_at_unscheduled_time_raises(self):
        """Applying at a time with no pulse should raise."""
        schedule = PulseSchedule([0.2], x_pulse())
        with pytest.raises(InvalidScheduleOrder):
            schedule.apply_at(0.3, KET0)

    def test_unitary_on_density_matrix(self):
        """Density matrices transform as U ρ U†."""
        rho = np.outer(KET0, KET0.conj())
        out = x_pulse()(rho)
        np.testing.assert_allclose(out, np.outer(KET1, KET1.conj()))

    def test_unitary_from_qobj(self):
        """Qobj unitaries should be accepted."""
        H = unitary_pulse(qutip.Qobj(np.array([[1, 1], [1, -1]]) / np.sqrt(2)))
        np.testing.assert_allclose(H(KET0), np.array([1, 1]) / np.sqrt(2))

    def test_non_square_unitary_raises(self):
        """Pulse unitaries must be square."""
        with pytest.raises(ValueError):
            unitary_pulse(np.ones((2, 3)))


class TestCursor:
    """Tests for per-trajectory progress through a schedule."""

    def test_fires_in_order_once(self):
        """Each pulse fires exactly once, and none fires early."""
        log = []

        def tag(name):
            def transform(state):
                log.append(name)
                return state

            return transform

        schedule = PulseSchedule([0.25, 0.5, 0.75], [tag("a"), tag("b"), tag("c")])
        cursor = schedule.cursor()
        assert cursor.next_time == 0.25

        state, fired = cursor.fire_due(0.2, KET0)
        assert fired == 0 and log == []

        state, fired = cursor.fire_due(0.5, state)
        assert fired == 2 and log == ["a", "b"]

        state, fired = cursor.fire_due(0.5, state)
        assert fired == 0

        state, fired = cursor.fire_due(1.0, state)
        assert fired == 1 and log == ["a", "b", "c"]
        assert cursor.next_time is None
        assert cursor.position == 3

    def test_independent_cursors(self):
        """Cursors from one schedule should not share progress."""
        schedule = PulseSchedule([0.1], x_pulse())
        first, second = schedule.cursor(), schedule.cursor()
        first.fire_due(1.0, KET0)
        assert second.position == 0
