"""ConnectomeStatsAnalyzer: runs edge-wise permutation inference for a study."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .config import StatsConfig
from .exceptions import ShapeMismatchError
from .io.loader import CohortImport, load_blocks, load_matrix, load_permutations
from .io.writers import OutputWriter
from .stats.design import ElementColumns, Hypothesis, check_design, check_inputs, load_hypotheses
from .stats.enhance import Enhancer, make_enhancer
from .stats.glm import AuxiliaryStats, VariableGLMTest, all_stats, make_glm_test
from .stats.permtest import (
    EMPIRICAL_SKEW_DEFAULT,
    PermutationResult,
    precompute_default_permutation,
    precompute_empirical_stat,
    run_permutations,
)
from .stats.shuffle import Shuffler

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """All outputs of one analysis."""

    hypotheses: list[Hypothesis]
    stats: np.ndarray  # (n_elements, n_hypotheses), t or sqrt(F)
    enhanced: np.ndarray  # (n_elements, n_hypotheses)
    auxiliary: AuxiliaryStats
    variable_glm: bool
    empirical: np.ndarray | None = None
    permutation: PermutationResult | None = None
    fwe_pvalues: np.ndarray | None = None

    @property
    def uncorrected_pvalues(self) -> np.ndarray | None:
        if self.permutation is None:
            return None
        return self.permutation.uncorrected_pvalues

    def statistic(self, ih: int) -> np.ndarray:
        """Reported statistic of one hypothesis: t-values, or F-values."""
        if self.hypotheses[ih].is_F:
            return self.stats[:, ih] ** 2
        return self.stats[:, ih]


def run_analysis(
    data: np.ndarray,
    design: np.ndarray,
    hypotheses: list[Hypothesis],
    enhancer: Enhancer,
    shuffler: Shuffler | None = None,
    extra_columns: ElementColumns | None = None,
    empirical_shuffler: Shuffler | None = None,
    skew: float = EMPIRICAL_SKEW_DEFAULT,
    strong: bool = False,
    n_threads: int = 1,
) -> AnalysisResult:
    """Run the full inference on in-memory inputs.

    Parameters
    ----------
    data : ndarray, shape (n_subjects, n_elements)
    design : ndarray, shape (n_subjects, n_factors)
    hypotheses : list[Hypothesis]
    enhancer : Enhancer
    shuffler : Shuffler, optional
        Shuffles for the permutation test; when None only the statistics of
        the unshuffled data are computed.
    extra_columns : ElementColumns, optional
    empirical_shuffler : Shuffler, optional
        Enables non-stationarity adjustment using these shuffles.
    skew : float
        Skew of the empirical statistic.
    strong : bool
        Strong FWE control across hypotheses.
    n_threads : int
        Worker threads for shuffle evaluation.
    """
    data = np.asarray(data, dtype=float)
    design = np.asarray(design, dtype=float)
    check_inputs(data, design, hypotheses, extra_columns)
    check_design(design, len(extra_columns) if extra_columns is not None else 0)

    auxiliary = all_stats(data, design, hypotheses, extra_columns)
    glm_test = make_glm_test(data, design, hypotheses, extra_columns)
    variable = isinstance(glm_test, VariableGLMTest)
    logger.info("Using %s GLM test", "variable" if variable else "fixed")

    empirical = None
    if empirical_shuffler is not None:
        empirical = precompute_empirical_stat(
            glm_test, enhancer, empirical_shuffler, skew=skew, n_threads=n_threads,
        )

    stats, enhanced = precompute_default_permutation(glm_test, enhancer, empirical)
    result = AnalysisResult(
        hypotheses=hypotheses,
        stats=stats,
        enhanced=enhanced,
        auxiliary=auxiliary,
        variable_glm=variable,
        empirical=empirical,
    )
    if shuffler is None:
        return result

    result.permutation = run_permutations(
        glm_test, enhancer, shuffler, enhanced,
        empirical=empirical, strong=strong, n_threads=n_threads,
    )
    result.fwe_pvalues = result.permutation.fwe_pvalues(enhanced)
    for ih, hyp in enumerate(hypotheses):
        logger.info(
            "%s: %d/%d edges with FWE p < 0.05",
            hyp.name, int(np.sum(result.fwe_pvalues[:, ih] < 0.05)), len(enhanced),
        )
    return result


class ConnectomeStatsAnalyzer:
    """Loads a study's inputs, runs the inference and writes the outputs.

    Parameters
    ----------
    config : StatsConfig
        Study configuration.
    cohort : CohortImport, optional
        Pre-loaded connectomes. If None, loads from ``config.input``.
    """

    def __init__(self, config: StatsConfig, cohort: CohortImport | None = None):
        self.config = config
        self.cohort = cohort or CohortImport.from_file(config.input)

    @property
    def n_subjects(self) -> int:
        return len(self.cohort)

    def load_design(self) -> np.ndarray:
        return load_matrix(self.config.design)

    def load_extra_columns(self) -> ElementColumns:
        columns = []
        for i, path in enumerate(self.config.columns, 1):
            column = CohortImport.from_file(path)
            if column.data.shape != self.cohort.data.shape:
                raise ShapeMismatchError(
                    f"Element-wise column {i} ({path}) has {len(column)} subjects and "
                    f"{column.n_edges} edges; expected {self.n_subjects} and {self.cohort.n_edges}"
                )
            if not column.all_finite:
                logger.info(
                    "Non-finite values in element-wise column %d; affected subjects "
                    "will be excluded from the corresponding edges", i,
                )
            columns.append(column.data)
        return ElementColumns(columns)

    def load_hypotheses(self) -> list[Hypothesis]:
        ftests = load_matrix(self.config.ftests) if self.config.ftests is not None else None
        return load_hypotheses(load_matrix(self.config.contrast), ftests=ftests, fonly=self.config.fonly)

    def build_enhancer(self) -> Enhancer:
        cfg = self.config
        return make_enhancer(
            cfg.algorithm,
            mat2vec=self.cohort.mat2vec,
            threshold=cfg.threshold,
            dh=cfg.tfce.dh,
            E=cfg.tfce.E,
            H=cfg.tfce.H,
        )

    def build_shuffler(self, nonstationarity: bool = False) -> Shuffler:
        perm = self.config.permutation
        blocks_path = perm.exchange_within or perm.exchange_whole
        blocks = load_blocks(blocks_path) if blocks_path is not None else None
        explicit_path = perm.permutations_nonstationarity if nonstationarity else perm.permutations
        explicit = load_permutations(explicit_path) if explicit_path is not None else None
        seed = perm.seed
        if nonstationarity and seed is not None:
            # Distinct stream from the main permutation test
            seed = seed + 1
        return Shuffler(
            self.n_subjects,
            n_shuffles=perm.n_shuffles_nonstationarity if nonstationarity else perm.n_shuffles,
            error_type=perm.errors,
            blocks=blocks,
            within=perm.exchange_within is not None,
            whole=perm.exchange_whole is not None,
            permutations=explicit,
            seed=seed,
            include_default=not nonstationarity,
        )

    def run(self) -> AnalysisResult:
        """Run the analysis and write all outputs to ``config.output_dir``."""
        cfg = self.config
        design = self.load_design()
        extra_columns = self.load_extra_columns()
        hypotheses = self.load_hypotheses()
        enhancer = self.build_enhancer()

        logger.info("Number of subjects: %d", self.n_subjects)
        logger.info("Number of factors: %d", design.shape[1] + len(extra_columns))
        logger.info("Number of hypotheses: %d", len(hypotheses))

        perm = cfg.permutation
        result = run_analysis(
            self.cohort.data,
            design,
            hypotheses,
            enhancer,
            shuffler=None if perm.notest else self.build_shuffler(),
            extra_columns=extra_columns,
            empirical_shuffler=self.build_shuffler(nonstationarity=True) if perm.nonstationarity else None,
            skew=perm.skew_nonstationarity,
            strong=perm.strong,
            n_threads=cfg.n_threads,
        )
        self.write(result)
        return result

    def write(self, result: AnalysisResult) -> None:
        writer = OutputWriter(self.config.output_dir, self.cohort.mat2vec, result.hypotheses)
        aux = result.auxiliary

        for i, betas in enumerate(aux.betas):
            writer.save_edges(betas, f"beta{i}")
        writer.save_per_hypothesis(aux.abs_effect, "abs_effect", t_only=True)
        writer.save_per_hypothesis(aux.std_effect, "std_effect", t_only=True)
        if result.variable_glm:
            writer.save_edges(aux.cond, "cond")
        writer.save_edges(aux.stdev, "std_dev")

        if result.empirical is not None:
            writer.save_per_hypothesis(result.empirical, "empirical")

        table = {}
        for ih, hyp in enumerate(result.hypotheses):
            postfix = writer.postfix(ih)
            kind = "Fvalue" if hyp.is_F else "tvalue"
            writer.save_edges(result.statistic(ih), kind + postfix)
            writer.save_edges(result.enhanced[:, ih], "enhanced" + postfix)
            table[f"{kind}_{hyp.name}"] = result.statistic(ih)
            table[f"enhanced_{hyp.name}"] = result.enhanced[:, ih]

        permutation = result.permutation
        if permutation is not None:
            if permutation.strong:
                writer.save_vector(permutation.null_distribution[:, 0], "null_dist")
            else:
                for ih in range(len(result.hypotheses)):
                    writer.save_vector(permutation.null_distribution[:, ih], "null_dist" + writer.postfix(ih))
            writer.save_per_hypothesis(result.fwe_pvalues, "fwe_pvalue")
            writer.save_per_hypothesis(result.uncorrected_pvalues, "uncorrected_pvalue")
            writer.save_per_hypothesis(permutation.null_contributions, "null_contributions")
            for ih, hyp in enumerate(result.hypotheses):
                table[f"fwe_pvalue_{hyp.name}"] = result.fwe_pvalues[:, ih]
                table[f"uncorrected_pvalue_{hyp.name}"] = result.uncorrected_pvalues[:, ih]

        writer.save_edge_table(table)
        logger.info("Outputs written to %s", self.config.output_dir)

    def validate(self) -> list[str]:
        """Validate the configuration against the loaded cohort."""
        issues = self.config.validate()
        if issues:
            return issues

        design = self.load_design()
        if design.shape[0] != self.n_subjects:
            issues.append(
                f"Number of subjects ({self.n_subjects}) does not match number of rows "
                f"in design matrix ({design.shape[0]})"
            )
        try:
            hypotheses = self.load_hypotheses()
            extra_columns = self.load_extra_columns()
            if not issues:
                check_inputs(self.cohort.data, design, hypotheses, extra_columns)
            self.build_enhancer()
            self.build_shuffler()
        except (ValueError, RuntimeError, FileNotFoundError) as e:
            issues.append(str(e))
        return issues
