"""Orchestrator configuration.

Settings come from, highest priority first:

  1. keyword overrides (what the CLI passes for its flags)
  2. a TOML file (``kiln.toml``)
  3. environment variables: ``KILN_CFG_JOBS=8``, ``KILN_CFG_STAGE0__COMPILER=/opt/c``
     (plain ``KILN_*`` names belong to the wrappers and are never read here)
  4. defaults below

Every field is either tracked or untracked. Tracked fields change what a
step produces, so they are part of the step's configuration fingerprint and
changing one forces a rebuild. Untracked fields (parallelism, verbosity,
which stages to keep, where the compilation cache lives) only change how the
build runs:

    jobs: int = Field(..., json_schema_extra=UNTRACKED)

Example ``kiln.toml``::

    build = "x86_64-unknown-linux-gnu"
    targets = ["x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu"]
    opt_level = "3"

    [stage0]
    compiler = "/opt/stage0/bin/compiler"

    [flags]
    0 = ["--cfg=bootstrap"]

    [drivers]
    compile-std = ["make", "-C", "{src}", "OUT={out}", "-j{jobs}"]
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from kiln import triple
from kiln.errors import ConfigError
from kiln.step import Step, StepKind

UNTRACKED = {"tracked": False}

DEFAULT_DRIVERS: dict[str, list[str]] = {
    StepKind.COMPILER.value: ["{wrapper:compiler}", "{src}", "--out-dir", "{out}"],
    StepKind.STD.value: ["{wrapper:compiler}", "{src}", "--out-dir", "{out}"],
    StepKind.TOOL.value: ["{wrapper:compiler}", "{src}", "--out-dir", "{out}"],
    StepKind.DOCS.value: ["{wrapper:docgen}", "{src}", "--out-dir", "{out}"],
    StepKind.TEST.value: ["{wrapper:compiler}", "--test", "{src}", "--out-dir", "{out}"],
}

DEFAULT_WRAPPER_ENV = {
    "COMPILER": "compiler",
    "DOCGEN": "docgen",
    "CC": "cache-cc",
    "BACKEND_CONFIG": "config-query",
}


class Stage0Config(BaseModel):
    """The externally supplied stage 0 toolchain."""

    compiler: Path | None = None
    docgen: Path | None = None
    cc: str | None = None
    backend_config: str | None = None


class SourcesConfig(BaseModel):
    """Source trees, relative to ``src_dir``."""

    compiler: Path = Path("compiler")
    std: Path = Path("library")
    tools: Path = Path("tools")
    tests: Path = Path("tests")
    docs: Path | None = None


class ToolchainConfig(BaseModel):
    compiler_name: str = "compiler"
    docgen_name: str = "docgen"
    stdlib_dir: str = "stdlib"


class CacheConfig(BaseModel):
    program: str | None = None
    endpoint: str | None = None


class BuildConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KILN_CFG_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    build: str = Field(default_factory=triple.default_build_triple)
    hosts: list[str] = Field(default_factory=list)
    targets: list[str] = Field(default_factory=list)

    src_dir: Path = Path(".")
    out_dir: Path = Path("build")

    jobs: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1, json_schema_extra=UNTRACKED)
    fail_fast: bool = Field(True, json_schema_extra=UNTRACKED)
    dry_run: bool = Field(False, json_schema_extra=UNTRACKED)
    verbose: int = Field(0, ge=0, json_schema_extra=UNTRACKED)
    keep_stages: list[int] = Field(default_factory=list, json_schema_extra=UNTRACKED)
    fingerprint_mode: Literal["mtime", "content"] = Field("mtime", json_schema_extra=UNTRACKED)
    cache: CacheConfig = Field(default_factory=CacheConfig, json_schema_extra=UNTRACKED)

    full_bootstrap: bool = True
    opt_level: str = "2"
    debug_assertions: bool = False
    features: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    flags: dict[int, list[str]] = Field(default_factory=dict)
    tools: list[str] = Field(default_factory=lambda: ["docgen"])

    stage0: Stage0Config = Field(default_factory=Stage0Config)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    drivers: dict[str, list[str]] = Field(default_factory=dict)
    inputs: dict[str, list[Path]] = Field(default_factory=dict)
    wrapper_env: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_WRAPPER_ENV))

    @field_validator("build")
    @classmethod
    def _check_build(cls, v: str) -> str:
        return triple.validate(v)

    @field_validator("hosts", "targets")
    @classmethod
    def _check_triples(cls, v: list[str]) -> list[str]:
        return [triple.validate(t) for t in dict.fromkeys(v)]

    @field_validator("drivers")
    @classmethod
    def _check_drivers(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        out = {}
        for name, argv in v.items():
            kind = StepKind.parse(name)
            if kind is StepKind.ASSEMBLE:
                raise ValueError("assemble runs in-process and takes no driver command")
            if not argv:
                raise ValueError(f"driver for {kind.value} is empty")
            out[kind.value] = list(argv)
        return out

    @field_validator("inputs")
    @classmethod
    def _check_inputs(cls, v: dict[str, list[Path]]) -> dict[str, list[Path]]:
        out = {}
        for key, paths in v.items():
            name, _, stage = key.partition(":")
            kind = StepKind.parse(name)
            if stage and not stage.isdigit():
                raise ValueError(f"inputs key {key!r}: stage must be a number")
            out[f"{kind.value}:{stage}" if stage else kind.value] = list(paths)
        return out

    @field_validator("wrapper_env")
    @classmethod
    def _check_wrapper_env(cls, v: dict[str, str]) -> dict[str, str]:
        from kiln.wrappers import VARIANTS

        for var, variant in v.items():
            if variant not in VARIANTS:
                raise ValueError(f"{var}: unknown wrapper variant {variant!r}")
        return v

    @model_validator(mode="after")
    def _default_platforms(self) -> BuildConfig:
        if not self.hosts:
            self.hosts = [self.build]
        if not self.targets:
            self.targets = list(self.hosts)
        return self

    # --- Loading ---

    @classmethod
    def load(cls, path: str | Path | None = None, **overrides: Any) -> BuildConfig:
        """Load from an optional TOML file, then apply non-None overrides."""
        data: dict[str, Any] = {}
        if path is not None:
            path = Path(path)
            try:
                with open(path, "rb") as f:
                    data = tomllib.load(f)
            except FileNotFoundError as e:
                raise ConfigError(f"config file not found: {path}") from e
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"{path}: {e}") from e
            src = Path(data.get("src_dir", "."))
            if not src.is_absolute():
                data["src_dir"] = str(path.parent / src)
        for key, value in overrides.items():
            if value is None:
                continue
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                value = {**data[key], **value}
            data[key] = value
        try:
            return cls(**data)
        except (ValidationError, SettingsError) as e:
            raise ConfigError(str(e)) from e

    # --- Derived paths ---

    @property
    def source_root(self) -> Path:
        return self.src_dir.resolve()

    @property
    def out_root(self) -> Path:
        out = self.out_dir if self.out_dir.is_absolute() else self.source_root / self.out_dir
        return out.resolve()

    def source_path(self, kind: StepKind) -> Path | None:
        """Declared source tree for ``kind``; None for kinds with no sources."""
        rel = {
            StepKind.COMPILER: self.sources.compiler,
            StepKind.STD: self.sources.std,
            StepKind.TOOL: self.sources.tools,
            StepKind.DOCS: self.sources.docs or self.sources.std,
            StepKind.TEST: self.sources.tests,
        }.get(kind)
        if rel is None:
            return None
        return rel if rel.is_absolute() else self.source_root / rel

    def extra_inputs(self, step: Step) -> list[Path]:
        """Additional inputs declared for a kind, or for a kind at one stage."""
        paths = self.inputs.get(step.kind.value, []) + self.inputs.get(f"{step.kind.value}:{step.stage}", [])
        return [p if p.is_absolute() else self.source_root / p for p in paths]

    def driver(self, kind: StepKind) -> list[str]:
        return list(self.drivers.get(kind.value) or DEFAULT_DRIVERS[kind.value])

    def stage_flags(self, stage: int) -> list[str]:
        return list(self.flags.get(stage, []))

    def is_kept(self, stage: int) -> bool:
        return stage in self.keep_stages

    # --- Fingerprinting ---

    def tracked(self) -> dict[str, Any]:
        """Tracked settings as plain JSON-able values."""
        dumped = self.model_dump(mode="json")
        out = {}
        for name, info in type(self).model_fields.items():
            extra = info.json_schema_extra
            if isinstance(extra, dict) and extra.get("tracked") is False:
                continue
            out[name] = dumped[name]
        return out

    def fingerprint_data(self, step: Step) -> dict[str, Any]:
        """The part of the configuration that affects ``step``'s output.

        Per-stage flags and drivers are narrowed to the step's own stage
        and kind, so changing stage 2 flags leaves stage 1 steps fresh.
        """
        data = self.tracked()
        data.pop("flags", None)
        data.pop("drivers", None)
        data.pop("hosts", None)
        data.pop("targets", None)
        data.pop("sources", None)
        data.pop("inputs", None)
        if step.kind not in (StepKind.TOOL, StepKind.ASSEMBLE):
            data.pop("tools", None)
        data["source"] = str(self.source_path(step.kind) or "")
        data["inputs"] = [str(p) for p in self.extra_inputs(step)]
        data["step"] = step.to_json()
        data["stage_flags"] = self.stage_flags(step.stage)
        if step.kind is not StepKind.ASSEMBLE:
            data["driver"] = self.driver(step.kind)
        return data
