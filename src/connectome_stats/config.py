"""YAML-driven study configuration loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .stats.enhance import TFCE_DH_DEFAULT, TFCE_E_DEFAULT, TFCE_H_DEFAULT, Algorithm
from .stats.permtest import EMPIRICAL_SKEW_DEFAULT
from .stats.shuffle import DEFAULT_NUM_SHUFFLES, DEFAULT_NUM_SHUFFLES_NONSTATIONARITY, ErrorType


@dataclass
class TFCEParams:
    """Threshold-free enhancement parameters."""

    dh: float = TFCE_DH_DEFAULT
    E: float = TFCE_E_DEFAULT
    H: float = TFCE_H_DEFAULT


@dataclass
class PermutationConfig:
    """Shuffling and inference options.

    Attributes
    ----------
    n_shuffles : int
        Number of shuffles, including the unshuffled data.
    seed : int, optional
        Seed for the shuffle generator.
    errors : str
        ``ee``, ``ise`` or ``both``.
    exchange_within, exchange_whole : Path, optional
        Exchangeability block files.
    permutations : Path, optional
        Explicit permutations file (replaces random shuffling).
    strong : bool
        Strong FWE control across hypotheses.
    notest : bool
        Only compute the statistics of the unshuffled data.
    nonstationarity : bool
        Apply non-stationarity adjustment.
    skew_nonstationarity : float
        Skew parameter of the empirical statistic.
    n_shuffles_nonstationarity : int
        Shuffles used to estimate the empirical statistic.
    permutations_nonstationarity : Path, optional
        Explicit permutations for the empirical statistic.
    """

    n_shuffles: int = DEFAULT_NUM_SHUFFLES
    seed: int | None = None
    errors: str = ErrorType.EE.value
    exchange_within: Path | None = None
    exchange_whole: Path | None = None
    permutations: Path | None = None
    strong: bool = False
    notest: bool = False
    nonstationarity: bool = False
    skew_nonstationarity: float = EMPIRICAL_SKEW_DEFAULT
    n_shuffles_nonstationarity: int = DEFAULT_NUM_SHUFFLES_NONSTATIONARITY
    permutations_nonstationarity: Path | None = None


@dataclass
class StatsConfig:
    """Complete connectome statistics configuration loaded from YAML.

    Relative paths are resolved against the directory of the YAML file.

    Attributes
    ----------
    name : str
        Human-readable study name.
    output_dir : Path
        Directory for all outputs.
    input : Path
        Text file listing one connectome file per subject.
    design : Path
        Design matrix (subjects x factors).
    contrast : Path
        Contrast matrix (one t-test per row).
    ftests : Path, optional
        F-test selection matrix.
    fonly : bool
        Only test the F-tests.
    columns : list[Path]
        Cohort files providing element-wise design columns.
    algorithm : str
        ``nbs``, ``nbse`` or ``none``.
    threshold : float, optional
        Statistic threshold for ``nbs``.
    tfce : TFCEParams
    permutation : PermutationConfig
    n_threads : int
        Worker threads for shuffle evaluation.
    raw : dict
        The raw parsed YAML for extension.
    """

    name: str
    output_dir: Path
    input: Path
    design: Path
    contrast: Path
    ftests: Path | None = None
    fonly: bool = False
    columns: list[Path] = field(default_factory=list)
    algorithm: str = Algorithm.NBSE.value
    threshold: float | None = None
    tfce: TFCEParams = field(default_factory=TFCEParams)
    permutation: PermutationConfig = field(default_factory=PermutationConfig)
    n_threads: int = 1
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_yaml(cls, path: str | Path) -> StatsConfig:
        """Load a study config from a YAML file."""
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, base_dir=path.parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: str | Path = ".") -> StatsConfig:
        base_dir = Path(base_dir)

        def resolve(value):
            if value is None:
                return None
            p = Path(value)
            return p if p.is_absolute() else base_dir / p

        missing = [key for key in ("output_dir", "input", "design", "contrast") if key not in data]
        if missing:
            raise ConfigurationError(f"Missing required configuration keys: {', '.join(missing)}")

        tfce_cfg = data.get("tfce") or {}
        perm_cfg = data.get("permutation") or {}
        threshold = data.get("threshold")
        seed = perm_cfg.get("seed")

        try:
            tfce = TFCEParams(
                dh=float(tfce_cfg.get("dh", TFCE_DH_DEFAULT)),
                E=float(tfce_cfg.get("e", TFCE_E_DEFAULT)),
                H=float(tfce_cfg.get("h", TFCE_H_DEFAULT)),
            )
            permutation = PermutationConfig(
                n_shuffles=int(perm_cfg.get("n_shuffles", DEFAULT_NUM_SHUFFLES)),
                seed=int(seed) if seed is not None else None,
                errors=str(perm_cfg.get("errors", ErrorType.EE.value)).lower(),
                exchange_within=resolve(perm_cfg.get("exchange_within")),
                exchange_whole=resolve(perm_cfg.get("exchange_whole")),
                permutations=resolve(perm_cfg.get("permutations")),
                strong=bool(perm_cfg.get("strong", False)),
                notest=bool(perm_cfg.get("notest", False)),
                nonstationarity=bool(perm_cfg.get("nonstationarity", False)),
                skew_nonstationarity=float(perm_cfg.get("skew_nonstationarity", EMPIRICAL_SKEW_DEFAULT)),
                n_shuffles_nonstationarity=int(
                    perm_cfg.get("n_shuffles_nonstationarity", DEFAULT_NUM_SHUFFLES_NONSTATIONARITY)
                ),
                permutations_nonstationarity=resolve(perm_cfg.get("permutations_nonstationarity")),
            )
            threshold = float(threshold) if threshold is not None else None
            n_threads = int(data.get("n_threads", 1))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        return cls(
            name=data.get("name", "connectome-stats"),
            output_dir=resolve(data["output_dir"]),
            input=resolve(data["input"]),
            design=resolve(data["design"]),
            contrast=resolve(data["contrast"]),
            ftests=resolve(data.get("ftests")),
            fonly=bool(data.get("fonly", False)),
            columns=[resolve(c) for c in data.get("columns") or []],
            algorithm=str(data.get("algorithm", Algorithm.NBSE.value)).lower(),
            threshold=threshold,
            tfce=tfce,
            permutation=permutation,
            n_threads=n_threads,
            raw=data,
        )

    def validate(self) -> list[str]:
        """Check configuration for common errors. Returns list of problems."""
        issues = []
        for label, path in [("input", self.input), ("design", self.design), ("contrast", self.contrast)]:
            if not path.exists():
                issues.append(f"{label} file does not exist: {path}")
        if self.ftests is not None and not self.ftests.exists():
            issues.append(f"ftests file does not exist: {self.ftests}")
        if self.fonly and self.ftests is None:
            issues.append("fonly requested but no ftests file provided")
        for path in self.columns:
            if not path.exists():
                issues.append(f"Element-wise column file does not exist: {path}")

        valid_algorithms = [a.value for a in Algorithm]
        if self.algorithm not in valid_algorithms:
            issues.append(
                f"Unknown algorithm '{self.algorithm}'. Available: {', '.join(valid_algorithms)}"
            )
        elif self.algorithm == Algorithm.NBS.value and self.threshold is None:
            issues.append("For the NBS algorithm, a threshold must be provided")
        if self.tfce.dh <= 0:
            issues.append(f"tfce.dh must be positive, got {self.tfce.dh}")

        perm = self.permutation
        valid_errors = [e.value for e in ErrorType]
        if perm.errors not in valid_errors:
            issues.append(f"Unknown error type '{perm.errors}'. Available: {', '.join(valid_errors)}")
        if perm.n_shuffles < 1:
            issues.append(f"permutation.n_shuffles must be positive, got {perm.n_shuffles}")
        if perm.nonstationarity and perm.n_shuffles_nonstationarity < 1:
            issues.append("permutation.n_shuffles_nonstationarity must be positive")
        if perm.skew_nonstationarity <= 0:
            issues.append("permutation.skew_nonstationarity must be positive")
        for label, p in [
            ("exchange_within", perm.exchange_within),
            ("exchange_whole", perm.exchange_whole),
            ("permutations", perm.permutations),
            ("permutations_nonstationarity", perm.permutations_nonstationarity),
        ]:
            if p is not None and not p.exists():
                issues.append(f"permutation.{label} file does not exist: {p}")
        if (
            perm.exchange_within is not None
            and perm.exchange_whole is not None
            and perm.exchange_within != perm.exchange_whole
        ):
            issues.append("exchange_within and exchange_whole must refer to the same block file")
        if perm.permutations is not None and (perm.exchange_within or perm.exchange_whole):
            issues.append("Explicit permutations cannot be combined with exchangeability blocks")
        if self.n_threads < 1:
            issues.append(f"n_threads must be positive, got {self.n_threads}")
        return issues
