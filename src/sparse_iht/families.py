"""Model family protocol, link functions, and resolution logic.

The ``ModelFamily`` protocol defines everything the IHT engine needs
from a response distribution: the inverse link (mean), its derivative,
the variance function, unit deviances, per-observation log-likelihood
contributions, and an optional nuisance-parameter update.  The engine
resolves a family **once** before iterating and then only calls these
methods — it never branches on the family type inside the hot loop.

Each concrete family is a frozen ``@dataclass``.  Families that carry
a nuisance parameter (negative binomial ``r``) return a **new**
instance from :meth:`ModelFamily.update_nuisance` rather than mutating
themselves, which keeps a family safe to share across the parallel
cross-validation workers.

Links
~~~~~
A ``Link`` maps the mean ``μ`` to the linear predictor ``η``.  Four
links are provided:

=============  ======================  ==========================
Link           ``μ = g⁻¹(η)``          ``dμ/dη``
=============  ======================  ==========================
``identity``   ``η``                   ``1``
``logit``      ``1 / (1 + e^{−η})``    ``μ(1 − μ)``
``probit``     ``Φ(η)``                ``φ(η)``
``log``        ``e^η``                 ``e^η``
=============  ======================  ==========================

Numerical safety
~~~~~~~~~~~~~~~~
The engine clamps each block of the linear predictor to ``[−20, 20]``
before calling :meth:`ModelFamily.mean`.  The log link additionally
clamps to ``[−30, 30]`` internally so that direct callers cannot
overflow ``exp``.  Bernoulli means are clipped away from ``{0, 1}``
before the variance is evaluated, since ``Φ(20)`` rounds to exactly
``1.0`` in double precision.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np
import statsmodels.api as sm
from scipy import special, stats

from .dispersion import estimate_r

_LOG_CLAMP = 30.0
_PROB_EPS = 1e-10

# ------------------------------------------------------------------ #
# Link functions
# ------------------------------------------------------------------ #


@runtime_checkable
class Link(Protocol):
    """Interface of a GLM link function."""

    @property
    def name(self) -> str: ...

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        """Mean ``μ = g⁻¹(η)``."""
        ...

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        """Derivative ``dμ/dη`` evaluated at *eta*."""
        ...

    def link(self, mu: np.ndarray) -> np.ndarray:
        """Linear predictor ``η = g(μ)``."""
        ...


@dataclass(frozen=True)
class IdentityLink:
    @property
    def name(self) -> str:
        return "identity"

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        return np.asarray(eta, dtype=float)

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        return np.ones_like(eta, dtype=float)

    def link(self, mu: np.ndarray) -> np.ndarray:
        return np.asarray(mu, dtype=float)

    def sm_link(self) -> Any:
        return sm.families.links.Identity()


@dataclass(frozen=True)
class LogitLink:
    @property
    def name(self) -> str:
        return "logit"

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        return special.expit(eta)

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        p = special.expit(eta)
        return p * (1.0 - p)

    def link(self, mu: np.ndarray) -> np.ndarray:
        return special.logit(mu)

    def sm_link(self) -> Any:
        return sm.families.links.Logit()


@dataclass(frozen=True)
class ProbitLink:
    @property
    def name(self) -> str:
        return "probit"

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        return special.ndtr(eta)

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        return np.exp(-0.5 * np.square(eta)) / math.sqrt(2.0 * math.pi)

    def link(self, mu: np.ndarray) -> np.ndarray:
        return special.ndtri(mu)

    def sm_link(self) -> Any:
        return sm.families.links.Probit()


@dataclass(frozen=True)
class LogLink:
    @property
    def name(self) -> str:
        return "log"

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        return np.exp(np.clip(eta, -_LOG_CLAMP, _LOG_CLAMP))

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        return np.exp(np.clip(eta, -_LOG_CLAMP, _LOG_CLAMP))

    def link(self, mu: np.ndarray) -> np.ndarray:
        return np.log(mu)

    def sm_link(self) -> Any:
        return sm.families.links.Log()


_LINKS: dict[str, type] = {
    "identity": IdentityLink,
    "logit": LogitLink,
    "probit": ProbitLink,
    "log": LogLink,
}


def resolve_link(link: str | Link) -> Link:
    """Resolve a link name or instance to a ``Link``.

    Raises:
        ValueError: If *link* is an unknown name.
    """
    if isinstance(link, Link):
        return link
    key = str(link).strip().lower()
    if key not in _LINKS:
        msg = f"Unknown link {link!r}.  Available links: {', '.join(sorted(_LINKS))}."
        raise ValueError(msg)
    instance: Link = _LINKS[key]()
    return instance


# ------------------------------------------------------------------ #
# ModelFamily protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class ModelFamily(Protocol):
    """Interface that every univariate response family must implement.

    Attributes:
        name: Short identifier (``"gaussian"``, ``"bernoulli"``, ...).
        link: The resolved ``Link`` instance held for the run.
    """

    @property
    def name(self) -> str: ...

    @property
    def link(self) -> Link: ...

    def mean(self, eta: np.ndarray) -> np.ndarray:
        """Mean ``μ = g⁻¹(η)``."""
        ...

    def variance(self, mu: np.ndarray) -> np.ndarray:
        """Variance function ``V(μ)`` (dispersion excluded)."""
        ...

    def link_derivative(self, eta: np.ndarray) -> np.ndarray:
        """``dμ/dη`` at *eta*."""
        ...

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        """Unit deviance (squared deviance residual) per observation."""
        ...

    def deviance(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        """Weighted sum of unit deviances."""
        ...

    def dispersion(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        """Dispersion ``φ`` used by :meth:`loglikelihood` (1 unless Gaussian)."""
        ...

    def loglik_contribution(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: float,
    ) -> np.ndarray:
        """Per-observation log-likelihood at mean *mu*."""
        ...

    def loglikelihood(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        """Weighted sum of log-likelihood contributions."""
        ...

    def validate_y(self, y: np.ndarray) -> None:
        """Raise ``ValueError`` if *y* is unsuitable for this family."""
        ...

    def update_nuisance(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
        method: str = "newton",
    ) -> ModelFamily:
        """Re-estimate nuisance parameters at fixed *mu*.

        One-parameter families return ``self``.
        """
        ...

    def nuisance_params(self) -> dict[str, float]:
        """Current nuisance parameters, for reporting."""
        ...

    def sm_family(self) -> Any:
        """statsmodels family object used for exact refits."""
        ...


# ------------------------------------------------------------------ #
# Shared GLM behaviour
# ------------------------------------------------------------------ #


class _GLMFamilyMixin:
    """Method bodies shared by the univariate families.

    Subclasses supply ``link``, ``variance``, ``deviance_residual`` and
    ``loglik_contribution``; everything else is derived here.
    """

    link: Link

    def mean(self, eta: np.ndarray) -> np.ndarray:
        return self.link.inverse(eta)

    def link_derivative(self, eta: np.ndarray) -> np.ndarray:
        return self.link.mu_eta(eta)

    def deviance(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        dev = self.deviance_residual(y, mu)  # type: ignore[attr-defined]
        if weights is None:
            return float(np.sum(dev))
        return float(np.dot(weights, dev))

    def dispersion(
        self,
        y: np.ndarray,  # noqa: ARG002
        mu: np.ndarray,  # noqa: ARG002
        weights: np.ndarray | None = None,  # noqa: ARG002
    ) -> float:
        return 1.0

    def loglikelihood(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        phi = self.dispersion(y, mu, weights)
        ll = self.loglik_contribution(y, mu, phi)  # type: ignore[attr-defined]
        if weights is None:
            return float(np.sum(ll))
        # Masked-out samples may carry -inf contributions (e.g. y outside
        # the support of a held-out row); exclude them explicitly.
        active = weights > 0
        return float(np.dot(weights[active], ll[active]))

    def update_nuisance(
        self,
        y: np.ndarray,  # noqa: ARG002
        mu: np.ndarray,  # noqa: ARG002
        weights: np.ndarray | None = None,  # noqa: ARG002
        method: str = "newton",  # noqa: ARG002
    ) -> Any:
        return self

    def nuisance_params(self) -> dict[str, float]:
        return {}

    def _check_numeric(self, y: np.ndarray) -> None:
        if not np.issubdtype(np.asarray(y).dtype, np.number):
            msg = f"{type(self).__name__} requires numeric Y values."
            raise ValueError(msg)
        if not np.all(np.isfinite(y)):
            msg = f"{type(self).__name__} does not accept NaN or infinite Y values."
            raise ValueError(msg)


def _check_link(family: str, link: Link, allowed: frozenset[str]) -> None:
    if link.name not in allowed:
        msg = (
            f"Link {link.name!r} is not supported for family {family!r}.  "
            f"Supported links: {sorted(allowed)}."
        )
        raise ValueError(msg)


# ------------------------------------------------------------------ #
# GaussianFamily
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class GaussianFamily(_GLMFamilyMixin):
    """Normal responses with the identity link.

    The dispersion ``φ`` is the (weighted) mean squared residual,
    re-evaluated on every log-likelihood call so that the profile
    likelihood is monotone in the residual sum of squares.
    """

    link: Link = dataclasses.field(default_factory=IdentityLink)

    def __post_init__(self) -> None:
        _check_link(self.name, self.link, frozenset({"identity"}))

    @property
    def name(self) -> str:
        return "gaussian"

    def variance(self, mu: np.ndarray) -> np.ndarray:
        return np.ones_like(mu, dtype=float)

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        return np.square(y - mu)

    def dispersion(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        dev = self.deviance(y, mu, weights)
        n = float(len(y)) if weights is None else float(np.sum(weights))
        return max(dev / n, 1e-12)

    def loglik_contribution(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: float,
    ) -> np.ndarray:
        return stats.norm.logpdf(y, loc=mu, scale=math.sqrt(dispersion))

    def validate_y(self, y: np.ndarray) -> None:
        self._check_numeric(y)
        if np.ptp(y) == 0:
            msg = "GaussianFamily requires non-constant Y values."
            raise ValueError(msg)

    def nuisance_params(self) -> dict[str, float]:
        return {}

    def sm_family(self) -> Any:
        return sm.families.Gaussian(self.link.sm_link())


# ------------------------------------------------------------------ #
# BernoulliFamily
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BernoulliFamily(_GLMFamilyMixin):
    """Binary 0/1 responses with the logit (canonical) or probit link."""

    link: Link = dataclasses.field(default_factory=LogitLink)

    def __post_init__(self) -> None:
        _check_link(self.name, self.link, frozenset({"logit", "probit"}))

    @property
    def name(self) -> str:
        return "bernoulli"

    def variance(self, mu: np.ndarray) -> np.ndarray:
        p = np.clip(mu, _PROB_EPS, 1.0 - _PROB_EPS)
        return p * (1.0 - p)

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        p = np.clip(mu, _PROB_EPS, 1.0 - _PROB_EPS)
        return -2.0 * (special.xlogy(y, p) + special.xlogy(1.0 - y, 1.0 - p))

    def loglik_contribution(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: float,  # noqa: ARG002
    ) -> np.ndarray:
        p = np.clip(mu, _PROB_EPS, 1.0 - _PROB_EPS)
        return special.xlogy(y, p) + special.xlogy(1.0 - y, 1.0 - p)

    def validate_y(self, y: np.ndarray) -> None:
        self._check_numeric(y)
        if not np.all(np.isin(y, [0, 1])):
            msg = "BernoulliFamily requires binary Y values (0 or 1)."
            raise ValueError(msg)

    def sm_family(self) -> Any:
        return sm.families.Binomial(self.link.sm_link())


# ------------------------------------------------------------------ #
# PoissonFamily
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PoissonFamily(_GLMFamilyMixin):
    """Count responses with the log link."""

    link: Link = dataclasses.field(default_factory=LogLink)

    def __post_init__(self) -> None:
        _check_link(self.name, self.link, frozenset({"log"}))

    @property
    def name(self) -> str:
        return "poisson"

    def variance(self, mu: np.ndarray) -> np.ndarray:
        return np.maximum(mu, _PROB_EPS)

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        mu = np.maximum(mu, _PROB_EPS)
        return 2.0 * (special.xlogy(y, y / mu) - (y - mu))

    def loglik_contribution(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: float,  # noqa: ARG002
    ) -> np.ndarray:
        return stats.poisson.logpmf(y, np.maximum(mu, _PROB_EPS))

    def validate_y(self, y: np.ndarray) -> None:
        self._check_numeric(y)
        if np.any(y < 0):
            msg = "PoissonFamily requires non-negative Y values."
            raise ValueError(msg)
        if not np.allclose(y, np.round(y)):
            msg = "PoissonFamily requires integer-valued Y. Got non-integer values."
            raise ValueError(msg)

    def sm_family(self) -> Any:
        return sm.families.Poisson(self.link.sm_link())


# ------------------------------------------------------------------ #
# NegativeBinomialFamily
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class NegativeBinomialFamily(_GLMFamilyMixin):
    """Overdispersed counts with the log link and dispersion ``r``.

    Uses the parameterisation

        P(Y = y) = Γ(r + y) / (Γ(r) y!) · (r / (μ + r))^r · (μ / (μ + r))^y

    so that ``E[Y] = μ`` and ``Var(Y) = μ + μ²/r``.  ``r`` is
    re-estimated by :meth:`update_nuisance` after every accepted IHT
    step, holding ``μ`` fixed; each update returns a **new** instance.

    Parameters
    ----------
    r : float
        Dispersion (size) parameter, ``r > 0``.
    """

    r: float = 1.0
    link: Link = dataclasses.field(default_factory=LogLink)

    def __post_init__(self) -> None:
        _check_link(self.name, self.link, frozenset({"log"}))
        if not (math.isfinite(self.r) and self.r > 0):
            msg = f"NegativeBinomialFamily requires r > 0, got {self.r}."
            raise ValueError(msg)

    @property
    def name(self) -> str:
        return "negative_binomial"

    def variance(self, mu: np.ndarray) -> np.ndarray:
        mu = np.maximum(mu, _PROB_EPS)
        return mu + np.square(mu) / self.r

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        mu = np.maximum(mu, _PROB_EPS)
        r = self.r
        return 2.0 * (special.xlogy(y, y / mu) - (y + r) * np.log((y + r) / (mu + r)))

    def loglik_contribution(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: float,  # noqa: ARG002
    ) -> np.ndarray:
        mu = np.maximum(mu, _PROB_EPS)
        return stats.nbinom.logpmf(y, self.r, self.r / (mu + self.r))

    def validate_y(self, y: np.ndarray) -> None:
        self._check_numeric(y)
        if np.any(y < 0):
            msg = "NegativeBinomialFamily requires non-negative Y values."
            raise ValueError(msg)
        if not np.allclose(y, np.round(y)):
            msg = (
                "NegativeBinomialFamily requires integer-valued Y. "
                "Got non-integer values."
            )
            raise ValueError(msg)

    def update_nuisance(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        weights: np.ndarray | None = None,
        method: str = "newton",
    ) -> NegativeBinomialFamily:
        r_new = estimate_r(y, mu, r0=self.r, weights=weights, method=method)
        return dataclasses.replace(self, r=r_new)

    def nuisance_params(self) -> dict[str, float]:
        return {"r": float(self.r)}

    def sm_family(self) -> Any:
        # statsmodels uses NB2 with Var(Y) = μ + α·μ², i.e. α = 1/r.
        return sm.families.NegativeBinomial(self.link.sm_link(), alpha=1.0 / self.r)


# ------------------------------------------------------------------ #
# MultivariateGaussianFamily
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MultivariateGaussianFamily:
    """Multivariate normal responses with an unknown precision matrix.

    Residuals are laid out ``(n, r)`` — one row per sample, one column
    per trait.  The log-likelihood, up to an additive constant, is

        ℓ(B, Γ) = n/2 · log det Γ − ½ · tr(Γ RᵀR)

    where ``R = Y − X Bᵀ − Z Cᵀ`` and ``n`` is the (weighted) number
    of samples.
    """

    @property
    def name(self) -> str:
        return "mvnormal"

    @property
    def link(self) -> Link:
        return IdentityLink()

    def loglikelihood(
        self,
        resid: np.ndarray,
        precision: np.ndarray,
        weights: np.ndarray | None = None,
    ) -> float:
        if weights is None:
            n = resid.shape[0]
            rtr = resid.T @ resid  # (r, r)
        else:
            n = float(np.sum(weights))
            rtr = (resid * weights[:, None]).T @ resid
        sign, logdet = np.linalg.slogdet(precision)
        if sign <= 0:
            return float("-inf")
        return float(0.5 * n * logdet - 0.5 * np.sum(precision * rtr))

    def deviance_residual(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        """Squared residual norm per sample."""
        return np.sum(np.square(y - mu), axis=1)

    def validate_y(self, y: np.ndarray) -> None:
        if not np.issubdtype(np.asarray(y).dtype, np.number):
            msg = "MultivariateGaussianFamily requires numeric Y values."
            raise ValueError(msg)
        if y.ndim != 2 or y.shape[1] < 2:
            msg = "MultivariateGaussianFamily requires an (n, r) response with r >= 2."
            raise ValueError(msg)
        if not np.all(np.isfinite(y)):
            msg = "MultivariateGaussianFamily does not accept NaN or infinite Y values."
            raise ValueError(msg)


# ------------------------------------------------------------------ #
# Family registry
# ------------------------------------------------------------------ #

_FAMILIES: dict[str, type] = {}


def register_family(name: str, cls: type) -> None:
    """Register a concrete ``ModelFamily`` class under *name*.

    Args:
        name: Lookup key (e.g. ``"gaussian"``, ``"poisson"``).
        cls: A class implementing the ``ModelFamily`` protocol whose
            constructor accepts a ``link`` keyword.

    Raises:
        TypeError: If *cls* does not satisfy the ``ModelFamily``
            protocol.
    """
    try:
        instance = cls()
    except Exception:  # noqa: BLE001
        msg = f"{cls!r} could not be instantiated for protocol check."
        raise TypeError(msg) from None
    if not isinstance(instance, (ModelFamily, MultivariateGaussianFamily)):
        msg = f"{cls!r} does not implement the ModelFamily protocol."
        raise TypeError(msg)
    _FAMILIES[name] = cls


def resolve_family(
    family: str | ModelFamily | MultivariateGaussianFamily,
    link: str | Link | None = None,
) -> Any:
    """Resolve a family string or instance to a concrete family.

    Instances are returned as-is (a *link* argument is then ignored).
    Strings are looked up in the registry; *link* ``None`` selects the
    family's canonical link.

    Args:
        family: Family identifier string or instance.
        link: Link name or instance, or ``None`` for the canonical link.

    Returns:
        A ready-to-use family instance.

    Raises:
        ValueError: If *family* is not registered or *link* is not
            supported by the family.
    """
    if isinstance(family, (ModelFamily, MultivariateGaussianFamily)):
        return family
    key = str(family).strip().lower()
    if key not in _FAMILIES:
        available = ", ".join(sorted(_FAMILIES)) or "(none registered)"
        msg = f"Unknown family {family!r}.  Available families: {available}."
        raise ValueError(msg)
    cls = _FAMILIES[key]
    if cls is MultivariateGaussianFamily:
        if link is not None and resolve_link(link).name != "identity":
            msg = "Family 'mvnormal' only supports the identity link."
            raise ValueError(msg)
        return cls()
    if link is None:
        return cls()
    return cls(link=resolve_link(link))


# ------------------------------------------------------------------ #
# Register built-in families
# ------------------------------------------------------------------ #

register_family("gaussian", GaussianFamily)
register_family("normal", GaussianFamily)
register_family("bernoulli", BernoulliFamily)
register_family("logistic", BernoulliFamily)
register_family("poisson", PoissonFamily)
register_family("negative_binomial", NegativeBinomialFamily)
register_family("mvnormal", MultivariateGaussianFamily)
