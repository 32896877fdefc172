"""
sequences.py - Diffusion-encoding gradient waveforms.
=====================================================

A sequence is the normalised time profile f(t) of the diffusion gradient.
It enters the Bloch-Torrey operator as

    M dy/dt = -(K + Q + R + i q f(t) J) y

Implemented variants (closed enumeration, see SequenceKind):
  - PGSE           : +1 pulse of width delta, -1 pulse starting at Delta
  - DoublePGSE     : two PGSE blocks separated by a pause tpause
  - CosOGSE        : cosine-modulated oscillating pulses (nperiod periods)
  - SinOGSE        : sine-modulated oscillating pulses (nperiod periods)
  - CustomSequence : user-supplied profile(t, delta, Delta)

Every sequence provides:
  - call(t)               : f(t), vectorised
  - integral(t)           : F(t) = int_0^t f(s) ds
  - integral_F2()         : int F(t)^2 dt  (b = q^2 * integral_F2)
  - diffusion_time()      : effective diffusion time
  - diffusion_time_sta()  : short-time-approximation diffusion time
  - J(lam)                : lam / int F^2 * int F(t) int_0^t exp(-lam (t-s)) f(s) ds dt
  - intervals()           : breakpoints where the analytic form changes

The waveform starts at t1 (leading pause) and the experiment ends at the
echo time TE.  All times share one unit (µs in the examples).
"""

from __future__ import annotations

import enum
import math
from abc import ABC, abstractmethod
from typing import Callable, List, NamedTuple, Optional, Tuple

import numpy as np
from scipy import integrate, special


# Below this value J(lam) switches to its Taylor expansion.
J_TAYLOR_THRESHOLD = 1e-7

# Gauss-Legendre order per interval for the generic double integrals.
_GAUSS_ORDER = 48


class SequenceKind(enum.Enum):
    """Tag identifying the waveform family of a Sequence."""
    PGSE = "PGSE"
    DOUBLE_PGSE = "DoublePGSE"
    COS_OGSE = "CosOGSE"
    SIN_OGSE = "SinOGSE"
    CUSTOM = "CustomSequence"


class IntervalPartition(NamedTuple):
    """Breakpoints of a sequence and the profile on each interval.

    timelist        : (ninterval + 1,) strictly increasing times, 0 -> TE
    interval_str    : human-readable label of each interval
    timeprofile_str : analytic form of f(t) on each interval
    constant        : True where f(t) is constant on the interval
    """
    timelist: np.ndarray
    interval_str: Tuple[str, ...]
    timeprofile_str: Tuple[str, ...]
    constant: Tuple[bool, ...]

    @property
    def ninterval(self) -> int:
        return len(self.timelist) - 1


def _constant_profile(value: float) -> Tuple[str, bool]:
    return f"f(t) = {value:g} (constant)", True


def _function_profile(expression: str) -> Tuple[str, bool]:
    return f"f(t) = {expression} (function)", False


def _mask(condition: np.ndarray) -> np.ndarray:
    return condition.astype(float)


def _as_output(values: np.ndarray, scalar: bool):
    return float(np.asarray(values).reshape(-1)[0]) if scalar else values


# ===========================================================================
# Base class
# ===========================================================================

class Sequence(ABC):
    """Abstract gradient time profile.

    Parameters
    ----------
    delta     : float   pulse duration (> 0)
    Delta     : float   time between the start of the two pulses (>= delta)
    TE        : float   optional echo time; must cover the waveform
    t1        : float   optional leading pause before the waveform
    symmetric : bool    with TE: centre the waveform, t1 = (TE - duration) / 2

    Echo-time policy
    ----------------
    * nothing given        : t1 = 0, TE = end of the waveform
    * TE                   : t1 = 0, trailing zero pause up to TE
    * TE, symmetric=True   : equal zero pauses before and after the waveform
    * t1                   : TE = t1 + waveform duration
    Any other combination, a negative t1, or a TE shorter than the waveform
    raises ValueError.

    Sequences are immutable: all attributes are read-only properties.
    """

    kind: SequenceKind

    def __init__(
        self,
        delta: float,
        Delta: float,
        *,
        TE: Optional[float] = None,
        t1: Optional[float] = None,
        symmetric: bool = False,
    ) -> None:
        if not np.isfinite(delta) or delta <= 0:
            raise ValueError(f"delta must be positive, got {delta}")
        if not np.isfinite(Delta) or Delta < delta:
            raise ValueError(f"Delta ({Delta}) must be finite and >= delta ({delta})")
        self._delta = float(delta)
        self._Delta = float(Delta)
        self._t1, self._TE = self._resolve_echo_time(TE, t1, symmetric)

    def _resolve_echo_time(self, TE, t1, symmetric) -> Tuple[float, float]:
        duration = self.natural_duration()
        if TE is None and t1 is None and not symmetric:
            return 0.0, duration
        if t1 is not None and TE is None and not symmetric:
            if not np.isfinite(t1) or t1 < 0:
                raise ValueError(f"t1 must be non-negative, got {t1}")
            return float(t1), float(t1) + duration
        if TE is not None and t1 is None:
            if not np.isfinite(TE) or TE < duration:
                policy = "symmetric" if symmetric else "explicit"
                raise ValueError(
                    f"TE ({TE}) is shorter than the waveform duration "
                    f"({duration}) under the {policy} echo-time policy"
                )
            if symmetric:
                return (float(TE) - duration) / 2, float(TE)
            return 0.0, float(TE)
        raise ValueError(
            "invalid echo-time arguments: give TE, TE with symmetric=True, "
            f"or t1 alone (got TE={TE}, t1={t1}, symmetric={symmetric})"
        )

    # -- read-only attributes ----------------------------------------------

    @property
    def delta(self) -> float:
        return self._delta

    @property
    def Delta(self) -> float:
        return self._Delta

    @property
    def t1(self) -> float:
        return self._t1

    @property
    def TE(self) -> float:
        return self._TE

    def echotime(self) -> float:
        """End of the waveform support, t1 + natural_duration()."""
        return self._t1 + self.natural_duration()

    # -- variant-specific pieces -------------------------------------------

    @abstractmethod
    def natural_duration(self) -> float:
        """Length of the waveform support, excluding t1 and trailing pause."""

    @abstractmethod
    def call(self, t):
        """Profile value f(t) at (array of) times t."""

    @abstractmethod
    def _edges(self) -> List[Tuple[float, str]]:
        """Breakpoints relative to t1 as (offset, symbolic name) pairs."""

    @abstractmethod
    def _profiles(self) -> List[Tuple[str, bool]]:
        """(description, is_constant) for each interval between _edges()."""

    def _params_str(self) -> str:
        return f"delta={self._delta:g}, Delta={self._Delta:g}"

    def _simplified_str(self) -> str:
        return f"{self.kind.value}_d{self._delta:g}_D{self._Delta:g}"

    # -- generic operations (overridden where closed forms exist) ------------

    def integral(self, t):
        """Running integral F(t) of the profile, by adaptive quadrature."""
        scalar = np.ndim(t) == 0
        t = np.atleast_1d(np.asarray(t, dtype=float))
        breakpoints = self.intervals().timelist
        values = np.empty_like(t)
        for i, ti in enumerate(t.ravel()):
            if ti <= 0:
                values.flat[i] = 0.0
                continue
            inner = breakpoints[(breakpoints > 0) & (breakpoints < ti)]
            values.flat[i] = integrate.quad(
                self.call, 0.0, ti,
                points=inner if inner.size else None, limit=200,
            )[0]
        return _as_output(values, scalar)

    def integral_F2(self) -> float:
        """Temporal integral of F(t)^2 over the waveform support."""
        return self._quad_support(lambda t: self.integral(t) ** 2)

    def diffusion_time(self) -> float:
        """Effective diffusion time, integral_F2 / delta^2."""
        return self.integral_F2() / self._delta**2

    def diffusion_time_sta(self) -> float:
        """Diffusion time entering the short-time approximation.

        Uses sqrt(t_sta) = -1/2 * int int f(t) f(s) |t-s|^(3/2) ds dt / int F^2,
        evaluated with Gauss-Legendre quadrature on every interval.
        """
        nodes, weights = self._gauss_nodes()
        fw = self.call(nodes) * weights
        kernel = np.abs(nodes[:, None] - nodes[None, :]) ** 1.5
        sqrt_t = -0.5 * (fw @ kernel @ fw) / self.integral_F2()
        return float(sqrt_t**2)

    def J(self, lam):
        """J(lam) transform used by eigenfunction-based solvers.

        For lam < J_TAYLOR_THRESHOLD a third-order Taylor expansion in lam is
        used, otherwise the double integral is evaluated by quadrature.
        """
        scalar = np.ndim(lam) == 0
        lam = np.atleast_1d(np.asarray(lam, dtype=float))
        F2 = self.integral_F2()
        small = lam < J_TAYLOR_THRESHOLD
        out = np.empty_like(lam)
        if np.any(small):
            moments = [F2] + [self._J_moment(k) for k in (1, 2, 3)]
            ls = lam[small]
            out[small] = ls / F2 * sum(
                (-ls) ** k / math.factorial(k) * m for k, m in enumerate(moments)
            )
        for i in np.flatnonzero(~small):
            out[i] = lam[i] / F2 * self._J_double_integral(
                lambda t, s, li=lam[i]: np.exp(-li * (t - s))
            )
        return _as_output(out, scalar)

    def _J_moment(self, k: int) -> float:
        return self._J_double_integral(lambda t, s: (t - s) ** k)

    def _J_double_integral(self, kernel: Callable) -> float:
        """int_0^TE F(t) int_0^t kernel(t, s) f(s) ds dt."""
        breakpoints = self.intervals().timelist

        def inner(t):
            pts = breakpoints[(breakpoints > 0) & (breakpoints < t)]
            return integrate.quad(
                lambda s: kernel(t, s) * self.call(s), 0.0, t,
                points=pts if pts.size else None, limit=200,
            )[0]

        return self._quad_support(lambda t: self.integral(t) * inner(t))

    # -- quadrature helpers ------------------------------------------------

    def _quad_support(self, func: Callable) -> float:
        """Sum of adaptive quadratures of func over every interval."""
        timelist = self.intervals().timelist
        return float(sum(
            integrate.quad(func, a, b, limit=200)[0]
            for a, b in zip(timelist[:-1], timelist[1:])
        ))

    def _gauss_nodes(self) -> Tuple[np.ndarray, np.ndarray]:
        x, w = np.polynomial.legendre.leggauss(_GAUSS_ORDER)
        timelist = self.intervals().timelist
        nodes, weights = [], []
        for a, b in zip(timelist[:-1], timelist[1:]):
            nodes.append(0.5 * (b - a) * x + 0.5 * (a + b))
            weights.append(0.5 * (b - a) * w)
        return np.concatenate(nodes), np.concatenate(weights)

    # -- intervals ---------------------------------------------------------

    def intervals(self) -> IntervalPartition:
        """Return the interval partition of [0, TE].

        Zero-length intervals (delta == Delta, tpause == 0, ...) are dropped.
        A zero-profile interval [0, t1] is prepended when t1 > 0 and
        [end, TE] is appended when TE exceeds the end of the waveform.
        """
        edges = self._edges()
        profiles = self._profiles()
        t1 = self._t1

        timelist = [t1 + edges[0][0]]
        interval_str, timeprofile_str, constant = [], [], []
        for (start, start_name), (stop, stop_name), (profile, is_const) in zip(
            edges[:-1], edges[1:], profiles
        ):
            if stop <= start:
                continue
            timelist.append(t1 + stop)
            interval_str.append(f"[{start_name}, {stop_name}]")
            timeprofile_str.append(profile)
            constant.append(is_const)

        zero, zero_const = _constant_profile(0)
        end_name = edges[-1][1]
        if self._TE > timelist[-1] and not np.isclose(self._TE, timelist[-1], rtol=1e-12, atol=0):
            timelist.append(self._TE)
            interval_str.append(f"[{end_name}, TE]")
            timeprofile_str.append(zero)
            constant.append(zero_const)
        else:
            timelist[-1] = self._TE
        if t1 > 0:
            timelist.insert(0, 0.0)
            interval_str.insert(0, "[0, t1]")
            timeprofile_str.insert(0, zero)
            constant.insert(0, zero_const)

        return IntervalPartition(
            np.asarray(timelist, dtype=float),
            tuple(interval_str),
            tuple(timeprofile_str),
            tuple(constant),
        )

    # -- string conversion -------------------------------------------------

    def string(self, simplified: bool = False) -> str:
        """Label used in logs and plot legends."""
        if simplified:
            return self._simplified_str()
        return (f"{self.kind.value}({self._params_str()}, "
                f"TE={self._TE:g}, t1={self._t1:g})")

    def __str__(self) -> str:
        return self.string()

    def __repr__(self) -> str:
        return self.string()


# ===========================================================================
# Pulsed sequences with exponential-sum closed forms
# ===========================================================================

class _PulsedSequence(Sequence):
    """Sequence built from rectangular pulses.

    For rectangular pulses both J(lam) and the STA diffusion time are sums
    over the pulse-edge time differences a_i with integer weights c_i:

        J(lam)       = -sum_i c_i (exp(-lam a_i) - 1 + lam a_i) / (lam^2 int F^2)
        sqrt(t_sta)  = 4/35 * sum_i c_i a_i^(7/2) / int F^2

    Subclasses only supply the (c_i, a_i) pairs.
    """

    @abstractmethod
    def _edge_differences(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return the weights c_i and time differences a_i."""

    def diffusion_time_sta(self) -> float:
        coeffs, rates = self._edge_differences()
        sqrt_t = 4 / 35 * np.sum(coeffs * rates**3.5) / self.integral_F2()
        return float(sqrt_t**2)

    def J(self, lam):
        scalar = np.ndim(lam) == 0
        lam = np.atleast_1d(np.asarray(lam, dtype=float))
        coeffs, rates = self._edge_differences()
        F2 = self.integral_F2()
        out = np.empty_like(lam)

        small = lam < J_TAYLOR_THRESHOLD
        if np.any(small):
            # exp(-x) - 1 + x = sum_{k>=2} (-x)^k / k!; the k = 2 term vanishes
            ls = lam[small]
            series = np.zeros_like(ls)
            factorial = 2.0
            for k in range(3, 9):
                factorial *= k
                series += (-1) ** k * ls ** (k - 2) * np.sum(coeffs * rates**k) / factorial
            out[small] = -series / F2

        big = ~small
        if np.any(big):
            lb = lam[big]
            x = np.outer(lb, rates)
            numerator = (np.expm1(-x) + x) @ coeffs
            out[big] = -numerator / (lb**2 * F2)

        return _as_output(out, scalar)


class PGSE(_PulsedSequence):
    """Pulsed Gradient Spin Echo: f = +1 on [0, delta), -1 on [Delta, Delta+delta].

    Examples
    --------
    >>> seq = PGSE(5000, 10000)
    >>> seq.TE
    15000.0
    >>> seq.integral_F2() == 5000**2 * (10000 - 5000 / 3)
    True
    """

    kind = SequenceKind.PGSE

    def natural_duration(self) -> float:
        return self._Delta + self._delta

    def call(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D = self._delta, self._Delta
        f = _mask((0 <= t) & (t < d)) - _mask((D <= t) & (t <= D + d))
        return _as_output(f, scalar)

    def integral(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D = self._delta, self._Delta
        F = (_mask((0 <= t) & (t < d)) * t
             + _mask((d <= t) & (t <= D + d)) * d
             - _mask((D <= t) & (t <= D + d)) * (t - D))
        return _as_output(F, scalar)

    def integral_F2(self) -> float:
        return self._delta**2 * (self._Delta - self._delta / 3)

    def diffusion_time(self) -> float:
        return self._Delta - self._delta / 3

    def _edge_differences(self):
        d, D = self._delta, self._Delta
        coeffs = np.array([1.0, 1.0, -2.0, -2.0])
        rates = np.array([D + d, D - d, d, D])
        return coeffs, rates

    def _edges(self):
        d, D = self._delta, self._Delta
        return [(0.0, "t1"), (d, "t1+delta"), (D, "t1+Delta"), (D + d, "t1+Delta+delta")]

    def _profiles(self):
        return [_constant_profile(1), _constant_profile(0), _constant_profile(-1)]


class DoublePGSE(_PulsedSequence):
    """Two PGSE blocks separated by a pause.

    Profile: +1, 0, -1, pause, +1, 0, -1 with pulse width delta, pulse
    separation Delta inside each block and a pause tpause between blocks.
    With tpause = 0 and delta = Delta the list of intervals collapses to two
    back-to-back PGSE(delta, delta) blocks.
    """

    kind = SequenceKind.DOUBLE_PGSE

    def __init__(self, delta: float, Delta: float, tpause: float = 0.0, **kwargs) -> None:
        if not np.isfinite(tpause) or tpause < 0:
            raise ValueError(f"tpause must be non-negative, got {tpause}")
        self._tpause = float(tpause)
        super().__init__(delta, Delta, **kwargs)

    @property
    def tpause(self) -> float:
        return self._tpause

    def natural_duration(self) -> float:
        return 2 * (self._Delta + self._delta) + self._tpause

    def call(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, p = self._delta, self._Delta, self._tpause
        f = (_mask((0 <= t) & (t < d))
             - _mask((D <= t) & (t < D + d))
             + _mask((p + D + d <= t) & (t < p + D + 2 * d))
             - _mask((p + 2 * D + d <= t) & (t <= p + 2 * D + 2 * d)))
        return _as_output(f, scalar)

    def integral(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, p = self._delta, self._Delta, self._tpause
        F = (_mask((0 <= t) & (t < d)) * t
             + _mask((d <= t) & (t < D + d)) * d
             - _mask((D <= t) & (t < D + d)) * (t - D)
             + _mask((p + D + d <= t) & (t < p + D + 2 * d)) * (t - (p + D + d))
             + _mask((p + D + 2 * d <= t) & (t <= p + 2 * D + 2 * d)) * d
             - _mask((p + 2 * D + d <= t) & (t <= p + 2 * D + 2 * d)) * (t - (p + 2 * D + d)))
        return _as_output(F, scalar)

    def integral_F2(self) -> float:
        return 2 * self._delta**2 * (self._Delta - self._delta / 3)

    def diffusion_time(self) -> float:
        return 2 * (self._Delta - self._delta / 3)

    def _edge_differences(self):
        d, D = self._delta, self._Delta
        tm = self._tpause + d
        coeffs = np.array([1, 1, 1, 1, -2, -2, -2, 2, 2, -2, 4, -4, -4], dtype=float)
        rates = np.array([
            2 * D + tm - d, 2 * D + tm + d, tm - d, tm + d,
            D + tm - d, D + tm + d, 2 * D + tm,
            D - d, D + d, tm,
            D + tm, D, d,
        ])
        return coeffs, rates

    def _edges(self):
        d, D, p = self._delta, self._Delta, self._tpause
        return [
            (0.0, "t1"),
            (d, "t1+delta"),
            (D, "t1+Delta"),
            (D + d, "t1+Delta+delta"),
            (p + D + d, "t1+tpause+Delta+delta"),
            (p + D + 2 * d, "t1+tpause+Delta+2*delta"),
            (p + 2 * D + d, "t1+tpause+2*Delta+delta"),
            (p + 2 * (D + d), "t1+tpause+2*(Delta+delta)"),
        ]

    def _profiles(self):
        return [_constant_profile(v) for v in (1, 0, -1, 0, 1, 0, -1)]

    def _params_str(self) -> str:
        return f"{super()._params_str()}, tpause={self._tpause:g}"

    def _simplified_str(self) -> str:
        return f"{super()._simplified_str()}_tm{self._delta + self._tpause:g}"


# ===========================================================================
# Oscillating gradients
# ===========================================================================

# A lobe quantity is a list of terms (c, p, z) standing for
# sum c tau^p exp(z tau) on [0, delta], tau measured from the lobe start.
Terms = List[Tuple[complex, int, complex]]


def _power_exp_integral(p: int, z: complex, d: float) -> complex:
    """int_0^d tau^p exp(z tau) dtau."""
    zd = z * d
    if abs(zd) < 1:
        # sum_m (z d)^m / m! * d^(p+1) / (p+m+1)
        total, term = 0j, 1.0 + 0j
        for m in range(30):
            total += term / (p + m + 1)
            term *= zd / (m + 1)
        return total * d ** (p + 1)
    ezd = np.exp(zd)
    value = (ezd - 1) / z
    for k in range(1, p + 1):
        value = (d**k * ezd - k * value) / z
    return value


def _integrate_terms(terms: Terms, d: float) -> complex:
    return sum(c * _power_exp_integral(p, z, d) for c, p, z in terms)


def _multiply_terms(a: Terms, b: Terms) -> Terms:
    return [(ca * cb, pa + pb, za + zb) for ca, pa, za in a for cb, pb, zb in b]


def _fresnel_exp_integrals(w: float, a: float, b: float) -> Tuple[complex, complex]:
    """Return int_a^b x^nu exp(i w x) dx for nu = 3/2 and 5/2 (0 <= a <= b).

    Starts from the Fresnel integral for nu = -1/2 and raises nu by
    integration by parts.
    """
    za, zb = np.sqrt(2 * w * np.array([a, b]) / np.pi)
    (sa, sb), (ca, cb) = special.fresnel(np.array([za, zb]))
    value = np.sqrt(2 * np.pi / w) * ((cb - ca) + 1j * (sb - sa))
    ea, eb = np.exp(1j * w * a), np.exp(1j * w * b)
    values = {}
    for nu in (0.5, 1.5, 2.5):
        value = (b**nu * eb - a**nu * ea - nu * value) / (1j * w)
        values[nu] = value
    return values[1.5], values[2.5]


class _OscillatingSequence(Sequence):
    """Oscillating gradient pair with nperiod periods per pulse.

    The second lobe is the negated copy of the first, shifted by Delta, and
    F vanishes between and after the lobes because every lobe holds whole
    periods.  With the first-lobe profile written as f1(tau) =
    sum c exp(mu tau), mu = +-i w, J(lam) and its Taylor moments reduce to
    integrals of tau^p exp(z tau) over one lobe, and the STA diffusion time
    to Fresnel integrals of the lobe autocorrelation

        g(u) = (delta - |u|) cos(w u) / 2 + s sin(w |u|) / (2 w)

    with s = -1 for cosine and s = +1 for sine lobes.
    """

    _ACF_SIGN = 0.0

    def __init__(self, delta: float, Delta: float, nperiod: int, **kwargs) -> None:
        if int(nperiod) != nperiod or nperiod < 1:
            raise ValueError(f"nperiod must be a positive integer, got {nperiod}")
        self._nperiod = int(nperiod)
        super().__init__(delta, Delta, **kwargs)

    @property
    def nperiod(self) -> int:
        return self._nperiod

    @property
    def _omega(self) -> float:
        return 2 * np.pi * self._nperiod / self._delta

    def natural_duration(self) -> float:
        return self._Delta + self._delta

    @abstractmethod
    def _lobe_profile(self) -> Terms:
        """f1 on the first lobe as (c, 0, mu) terms."""

    def _lobe_integral(self) -> Terms:
        """F1(tau) = int_0^tau f1."""
        terms = []
        for c, _, mu in self._lobe_profile():
            terms += [(c / mu, 0, mu), (-c / mu, 0, 0j)]
        return terms

    def J(self, lam):
        scalar = np.ndim(lam) == 0
        lam = np.atleast_1d(np.asarray(lam, dtype=float))
        d, D = self._delta, self._Delta
        F2 = self.integral_F2()
        f1, F1 = self._lobe_profile(), self._lobe_integral()
        out = np.empty_like(lam)

        small = lam < J_TAYLOR_THRESHOLD
        if np.any(small):
            moments = [F2] + [self._lobe_moment(k) for k in (1, 2, 3)]
            ls = lam[small]
            out[small] = ls / F2 * sum(
                (-ls) ** k / math.factorial(k) * m for k, m in enumerate(moments)
            )

        for i in np.flatnonzero(~small):
            li = lam[i]
            # H1(tau) = int_0^tau exp(-lam (tau - s)) f1(s) ds
            H1 = []
            for c, _, mu in f1:
                H1 += [(c / (li + mu), 0, mu), (-c / (li + mu), 0, -li + 0j)]
            H1_end = sum(c * np.exp(z * d) for c, _, z in H1)
            decay = _integrate_terms(_multiply_terms(F1, [(1.0, 0, -li + 0j)]), d)
            core = (2 * _integrate_terms(_multiply_terms(F1, H1), d)
                    - np.exp(-li * (D - d)) * H1_end * decay)
            out[i] = li / F2 * core.real

        return _as_output(out, scalar)

    def _lobe_moment(self, k: int) -> float:
        """int F(t) int_0^t (t - s)^k f(s) ds dt over both lobes."""
        d, D = self._delta, self._Delta
        f1, F1 = self._lobe_profile(), self._lobe_integral()

        # both times in the same lobe; inner integral in closed form
        inner = []
        for c, _, mu in f1:
            scale = c * math.factorial(k) / mu ** (k + 1)
            inner.append((scale, 0, mu))
            inner += [(-scale * mu**j / math.factorial(j), j, 0j) for j in range(k + 1)]
        same = _integrate_terms(_multiply_terms(F1, inner), d)

        # t in the second lobe, s in the first: (D + tau - sigma)^k expanded
        cross = 0j
        for j in range(k + 1):
            shift = [(math.comb(k - j, i) * D ** (k - j - i), i, 0j) for i in range(k - j + 1)]
            outer = _integrate_terms(_multiply_terms(F1, shift), d)
            first = _integrate_terms(_multiply_terms(f1, [(1.0, j, 0j)]), d)
            cross += math.comb(k, j) * (-1) ** j * outer * first

        return float((2 * same - cross).real)

    def diffusion_time_sta(self) -> float:
        d, D, w, s = self._delta, self._Delta, self._omega, self._ACF_SIGN

        K15, K25 = _fresnel_exp_integrals(w, 0.0, d)
        same = (d * K15 - K25).real + s / w * K15.imag

        E = np.exp(-1j * w * D)
        K15, K25 = _fresnel_exp_integrals(w, D, D + d)
        after = 0.5 * (E * ((d + D) * K15 - K25)).real + s / (2 * w) * (E * K15).imag
        K15, K25 = _fresnel_exp_integrals(w, D - d, D)
        before = 0.5 * (E * ((d - D) * K15 + K25)).real - s / (2 * w) * (E * K15).imag

        sqrt_t = (after + before - same) / self.integral_F2()
        return float(sqrt_t**2)

    def _edges(self):
        d, D = self._delta, self._Delta
        return [(0.0, "t1"), (d, "t1+delta"), (D, "t1+Delta"), (D + d, "t1+Delta+delta")]

    def _params_str(self) -> str:
        return f"{super()._params_str()}, n={self._nperiod}"

    def _simplified_str(self) -> str:
        return f"{super()._simplified_str()}_n{self._nperiod}"


class CosOGSE(_OscillatingSequence):
    """Cosine OGSE: f = cos(w t) on the first pulse, -cos(w (t-Delta)) on the second."""

    kind = SequenceKind.COS_OGSE
    _ACF_SIGN = -1.0

    def call(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, w = self._delta, self._Delta, self._omega
        f = (_mask((0 <= t) & (t < d)) * np.cos(w * t)
             - _mask((D <= t) & (t <= D + d)) * np.cos(w * (t - D)))
        return _as_output(f, scalar)

    def integral(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, w = self._delta, self._Delta, self._omega
        F = (_mask((0 <= t) & (t < d)) * np.sin(w * t) / w
             - _mask((D <= t) & (t <= D + d)) * np.sin(w * (t - D)) / w)
        return _as_output(F, scalar)

    def integral_F2(self) -> float:
        return self._delta**3 / (4 * np.pi**2 * self._nperiod**2)

    def diffusion_time(self) -> float:
        return self._delta / (8 * self._nperiod)

    def _lobe_profile(self):
        w = self._omega
        return [(0.5, 0, 1j * w), (0.5, 0, -1j * w)]

    def _profiles(self):
        return [
            _function_profile("cos(2*pi*n*(t-t1)/delta)"),
            _constant_profile(0),
            _function_profile("-cos(2*pi*n*(t-t1-Delta)/delta)"),
        ]


class SinOGSE(_OscillatingSequence):
    """Sine OGSE: f = sin(w t) on the first pulse, -sin(w (t-Delta)) on the second."""

    kind = SequenceKind.SIN_OGSE
    _ACF_SIGN = 1.0

    def call(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, w = self._delta, self._Delta, self._omega
        f = (_mask((0 <= t) & (t < d)) * np.sin(w * t)
             - _mask((D <= t) & (t <= D + d)) * np.sin(w * (t - D)))
        return _as_output(f, scalar)

    def integral(self, t):
        scalar = np.ndim(t) == 0
        t = np.asarray(t, dtype=float) - self._t1
        d, D, w = self._delta, self._Delta, self._omega
        F = (_mask((0 <= t) & (t < d)) * (1 - np.cos(w * t)) / w
             - _mask((D <= t) & (t <= D + d)) * (1 - np.cos(w * (t - D))) / w)
        return _as_output(F, scalar)

    def integral_F2(self) -> float:
        return 3 * self._delta**3 / (4 * np.pi**2 * self._nperiod**2)

    def diffusion_time(self) -> float:
        return 3 * self._delta / (8 * self._nperiod)

    def _lobe_profile(self):
        w = self._omega
        return [(-0.5j, 0, 1j * w), (0.5j, 0, -1j * w)]

    def _profiles(self):
        return [
            _function_profile("sin(2*pi*n*(t-t1)/delta)"),
            _constant_profile(0),
            _function_profile("-sin(2*pi*n*(t-t1-Delta)/delta)"),
        ]


# ===========================================================================
# User-defined profile
# ===========================================================================

class CustomSequence(Sequence):
    """Sequence with a user-supplied profile on [0, Delta + delta].

    Parameters
    ----------
    delta, Delta : float
    profile      : callable  profile(t, delta, Delta), vectorised over t,
                             defined on [0, Delta + delta] (times relative
                             to the waveform start)

    All integrals are computed by quadrature.  For the result to describe a
    refocused echo the profile should satisfy F(Delta + delta) = 0.

    Examples
    --------
    >>> pgse_like = CustomSequence(
    ...     5000, 10000, lambda t, d, D: (t < d) * 1.0 - (t >= D) * 1.0)
    """

    kind = SequenceKind.CUSTOM

    def __init__(self, delta: float, Delta: float, profile: Callable, **kwargs) -> None:
        if not callable(profile):
            raise ValueError(f"profile must be callable, got {type(profile).__name__}")
        self._profile = profile
        super().__init__(delta, Delta, **kwargs)

    @property
    def profile(self) -> Callable:
        return self._profile

    def natural_duration(self) -> float:
        return self._Delta + self._delta

    def call(self, t):
        scalar = np.ndim(t) == 0
        t = np.atleast_1d(np.asarray(t, dtype=float)) - self._t1
        inside = (0 <= t) & (t <= self.natural_duration())
        f = np.zeros_like(t)
        if np.any(inside):
            f[inside] = np.asarray(
                self._profile(t[inside], self._delta, self._Delta), dtype=float
            )
        return _as_output(f, scalar)

    def _edges(self):
        d, D = self._delta, self._Delta
        return [(0.0, "t1"), (d, "t1+delta"), (D, "t1+Delta"), (D + d, "t1+Delta+delta")]

    def _profiles(self):
        return [_function_profile("custom")] * 3

    def _params_str(self) -> str:
        name = getattr(self._profile, "__name__", "profile")
        return f"{super()._params_str()}, f={name}"
