"""
edgeR-like differential expression analysis for RNA-seq data in Python.

This package implements the core edgeR classic GLM workflow for
finding genes whose expression differs between conditions from
RNA-seq read counts: expression filtering, TMM normalization,
empirical Bayes dispersion estimation, negative binomial GLM fitting,
likelihood ratio tests of arbitrary contrasts and Benjamini-Hochberg
FDR control.

Main Classes:
    CountMatrix : Immutable genes x samples count table
    SampleDesign : Full-rank design matrix aligned to the samples
    AnalysisConfig : All tunable parameters, loadable from YAML

Main Functions:
    run_pipeline : Run the full analysis on count data
    filter_counts : Remove excluded and lowly expressed genes
    calc_norm_factors : TMM (or RLE / upper-quartile) normalization
    estimate_dispersions : Common, trended and tagwise dispersions
    fit_glm : Gene-wise negative binomial GLM fits
    glm_lrt : Likelihood ratio test of a contrast
    rank_genes : BH correction and ranking

References:
    Robinson MD, McCarthy DJ, Smyth GK (2010). edgeR: a Bioconductor
    package for differential expression analysis of digital gene
    expression data. Bioinformatics 26:139-140
"""

# Core pipeline
from .pipeline import run_pipeline, AnalysisResult
from .config import AnalysisConfig

# Data containers
from .dataset import CountMatrix
from .design import (
    SampleDesign,
    model_matrix,
    align_metadata,
    make_contrast
)

# Stages
from .filtering import filter_counts, filter_by_expr
from .norm_factors import calc_norm_factors, NormalizationResult
from .dispersion import estimate_dispersions, DispersionEstimate
from .glm import fit_glm, GLMFitResult
from .lrt import glm_lrt, ContrastResult
from .multiple_testing import benjamini_hochberg, rank_genes, RankedResult

# Results
from .results import top_tags, decide_tests, summary, annotate, write_results

# Utilities
from .utils import cpm, ave_log_cpm

# Errors
from .errors import (
    EdgePyError,
    ValidationError,
    ConfigurationError,
    ConvergenceWarning,
    NumericalWarning
)

__version__ = "0.1.0"

__all__ = [
    # Core
    'run_pipeline',
    'AnalysisResult',
    'AnalysisConfig',

    # Data
    'CountMatrix',
    'SampleDesign',
    'model_matrix',
    'align_metadata',
    'make_contrast',

    # Stages
    'filter_counts',
    'filter_by_expr',
    'calc_norm_factors',
    'NormalizationResult',
    'estimate_dispersions',
    'DispersionEstimate',
    'fit_glm',
    'GLMFitResult',
    'glm_lrt',
    'ContrastResult',
    'benjamini_hochberg',
    'rank_genes',
    'RankedResult',

    # Results
    'top_tags',
    'decide_tests',
    'summary',
    'annotate',
    'write_results',

    # Utilities
    'cpm',
    'ave_log_cpm',

    # Errors
    'EdgePyError',
    'ValidationError',
    'ConfigurationError',
    'ConvergenceWarning',
    'NumericalWarning',
]
