"""sparse_iht — Sparse generalised linear models by Iterative Hard Thresholding.

Fits GLMs (Gaussian, Bernoulli, Poisson, negative binomial) and a
multivariate Gaussian model with an explicit cap on the number of
nonzero coefficients, optionally grouped and prior-weighted, over a
wide compressed genotype block next to dense covariates.  Sparsity
levels are selected by parallel K-fold cross-validation.

Public API:
    .. autosummary::
        fit
        fit_path
        cross_validate
        make_folds
        IHTEngine
        MultivariateIHTEngine
        IHTOptions
        DesignView
        GenotypeMatrix
        DenseBlock
        maf_weights
        project_k
        project_group_sparse
        project_weighted
        ModelFamily
        GaussianFamily
        BernoulliFamily
        PoissonFamily
        NegativeBinomialFamily
        MultivariateGaussianFamily
        resolve_family
        register_family
        resolve_link
        estimate_r
        FitResult
        CrossValidationResult
        IterationRecord
        NumericalInstabilityError
        get_blas_threads
        set_blas_threads
"""

from ._config import get_blas_threads, set_blas_threads
from ._errors import NumericalInstabilityError
from ._options import IHTOptions
from ._results import CrossValidationResult, FitResult, IterationRecord
from .cross_validation import cross_validate, make_folds
from .design import DenseBlock, DesignView, GenotypeMatrix, maf_weights
from .dispersion import estimate_r
from .engine import IHTEngine, fit, fit_path
from .families import (
    BernoulliFamily,
    GaussianFamily,
    ModelFamily,
    MultivariateGaussianFamily,
    NegativeBinomialFamily,
    PoissonFamily,
    register_family,
    resolve_family,
    resolve_link,
)
from .multivariate import MultivariateIHTEngine
from .projections import project_group_sparse, project_k, project_weighted

__version__ = "0.1.0"

__all__ = [
    "fit",
    "fit_path",
    "cross_validate",
    "make_folds",
    "IHTEngine",
    "MultivariateIHTEngine",
    "IHTOptions",
    "DesignView",
    "GenotypeMatrix",
    "DenseBlock",
    "maf_weights",
    "project_k",
    "project_group_sparse",
    "project_weighted",
    "ModelFamily",
    "GaussianFamily",
    "BernoulliFamily",
    "PoissonFamily",
    "NegativeBinomialFamily",
    "MultivariateGaussianFamily",
    "resolve_family",
    "register_family",
    "resolve_link",
    "estimate_r",
    "FitResult",
    "CrossValidationResult",
    "IterationRecord",
    "NumericalInstabilityError",
    "get_blas_threads",
    "set_blas_threads",
]
