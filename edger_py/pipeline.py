"""
edgeR-like differential expression pipeline.

Runs filter -> normalization -> dispersion -> GLM fit -> likelihood
ratio test -> BH correction in order. Every stage returns a new immutable
snapshot; all of them are kept on the returned :class:`AnalysisResult`
so intermediate artifacts (log-CPM, dispersions, fitted values) can be
handed to plotting or reporting code.
"""

import logging
import time
from dataclasses import dataclass

import pandas as pd

from .config import AnalysisConfig
from .dataset import CountMatrix
from .design import SampleDesign, make_contrast
from .dispersion import estimate_dispersions
from .filtering import filter_counts
from .glm import fit_glm
from .lrt import glm_lrt
from .multiple_testing import rank_genes
from .norm_factors import calc_norm_factors
from .utils import cpm

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    """Snapshots of every pipeline stage."""

    counts: CountMatrix
    filtered: CountMatrix
    design: SampleDesign
    normalization: object
    dispersion: object
    fit: object
    test: object
    ranked: object
    config: AnalysisConfig

    @property
    def table(self):
        return self.ranked.table

    @property
    def warnings(self):
        return self.ranked.warnings

    def log_cpm(self, prior_count=2.0):
        """Normalized log2-CPM of the filtered counts (genes x samples)."""
        return cpm(self.filtered.to_dataframe(), self.normalization.lib_sizes,
                   self.normalization.norm_factors, log=True, prior_count=prior_count)

    def fitted_log_cpm(self, prior_count=2.0):
        """log2-CPM of the GLM fitted values, as a DataFrame."""
        return pd.DataFrame(self.fit.fitted_log_cpm(prior_count),
                            index=pd.Index(self.fit.gene_ids, name="gene_id"),
                            columns=self.fit.sample_ids)


def run_pipeline(counts, design, contrast, exclude=(), config=None):
    """
    Run the full differential expression analysis.

    Parameters
    ----------
    counts : CountMatrix or pd.DataFrame
        Genes x samples raw counts.
    design : SampleDesign, pd.DataFrame or np.ndarray
        Design matrix with one row per sample. A DataFrame is indexed by
        sample id; a bare array must follow the count column order.
    contrast : int, str, dict or array-like
        Contrast to test, see :func:`edger_py.design.make_contrast`.
    exclude : iterable of str
        Gene identifiers removed before filtering.
    config : AnalysisConfig, optional

    Returns
    -------
    AnalysisResult

    Examples
    --------
    >>> design = model_matrix(metadata, ["group"])
    >>> res = run_pipeline(counts_df, design, "group[T.B]")
    >>> res.ranked.significant(0.05)
    """
    config = config or AnalysisConfig()
    start = time.time()

    if isinstance(counts, pd.DataFrame):
        counts = CountMatrix.from_dataframe(counts)
    if not isinstance(design, SampleDesign):
        if isinstance(design, pd.DataFrame):
            design = SampleDesign.from_matrix(design)
        else:
            design = SampleDesign.from_matrix(design, sample_ids=counts.sample_ids)
    design = design.aligned_to(counts.sample_ids)
    # fail on an unusable contrast before any fitting
    contrast = make_contrast(design, contrast)
    logger.info("Input: %d genes x %d samples; design columns: %s",
                counts.n_genes, counts.n_samples, ", ".join(design.columns))

    f = config.filter
    filtered = filter_counts(counts, exclude=exclude, log_cpm_threshold=f.log_cpm_threshold,
                             min_samples=f.min_samples, prior_count=f.prior_count)

    n = config.normalization
    norm = calc_norm_factors(filtered, method=n.method, reference_sample=n.reference_sample,
                             logratio_trim=n.logratio_trim, sum_trim=n.sum_trim,
                             do_weighting=n.do_weighting, a_cutoff=n.a_cutoff,
                             min_genes=n.min_genes)

    disp = estimate_dispersions(filtered, design, norm, config=config.dispersion,
                                glm_config=config.glm, n_jobs=config.n_jobs)
    fit = fit_glm(filtered, design, disp, norm, config=config.glm, n_jobs=config.n_jobs)
    test = glm_lrt(fit, contrast, config=config.glm,
                   prior_count=config.dispersion.prior_count, n_jobs=config.n_jobs)
    ranked = rank_genes(test, warning_groups=(norm.warnings, disp.warnings, fit.warnings),
                        fdr=config.testing.fdr)

    n_sig = int((ranked.table["FDR"] <= config.testing.fdr).sum())
    logger.info("Done in %.1f s: %d of %d genes at FDR <= %g",
                time.time() - start, n_sig, len(ranked), config.testing.fdr)
    return AnalysisResult(counts, filtered, design, norm, disp, fit, test, ranked, config)

