from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/tumor_ai.toml")
DEFAULT_LABELS: Final[tuple[str, ...]] = ("Glioma", "Meningioma", "No tumor", "Pituitary")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class ClassifierConfig:
    model_path: Path = Path("models/brain_tumor_cnn.tflite")
    input_size: int = 150
    labels: tuple[str, ...] = DEFAULT_LABELS
    max_image_mb: int = 10
    max_image_side_px: int = 8192
    predict_timeout_seconds: int = 10
    serialize_requests: bool = True


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    classifier: ClassifierConfig
    security: SecurityConfig

    @staticmethod
    def defaults() -> Settings:
        return Settings(app=AppConfig(), classifier=ClassifierConfig(), security=SecurityConfig())

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("TUMOR_AI_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            classifier=_load_classifier_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            classifier=_merge_classifier(base.classifier, _toml_table(raw, "classifier")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_classifier_from_env() -> ClassifierConfig:
    c = ClassifierConfig()
    mp = os.getenv("CLASSIFIER__MODEL_PATH")
    sz = os.getenv("CLASSIFIER__INPUT_SIZE")
    lb = os.getenv("CLASSIFIER__LABELS")
    mb = os.getenv("CLASSIFIER__MAX_IMAGE_MB")
    mx = os.getenv("CLASSIFIER__MAX_IMAGE_SIDE_PX")
    to = os.getenv("CLASSIFIER__PREDICT_TIMEOUT_SECONDS")
    sr = os.getenv("CLASSIFIER__SERIALIZE_REQUESTS")
    if mp:
        c = replace(c, model_path=Path(mp))
    if sz is not None:
        c = replace(c, input_size=_positive_int(sz, "CLASSIFIER__INPUT_SIZE"))
    if lb:
        c = replace(c, labels=_parse_labels(lb.split(",")))
    if mb is not None:
        c = replace(c, max_image_mb=_positive_int(mb, "CLASSIFIER__MAX_IMAGE_MB"))
    if mx is not None:
        c = replace(c, max_image_side_px=_positive_int(mx, "CLASSIFIER__MAX_IMAGE_SIDE_PX"))
    if to is not None:
        timeout = _positive_int(to, "CLASSIFIER__PREDICT_TIMEOUT_SECONDS")
        c = replace(c, predict_timeout_seconds=timeout)
    if sr is not None:
        c = replace(c, serialize_requests=sr.strip().lower() in {"1", "true", "yes", "on"})
    return c


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_classifier(base: ClassifierConfig, data: dict[str, object]) -> ClassifierConfig:
    out = base
    if "model_path" in data:
        out = replace(out, model_path=Path(str(data["model_path"])))
    if "input_size" in data:
        out = replace(out, input_size=_positive_int(str(data["input_size"]), "input_size"))
    if "labels" in data:
        labels_in = data["labels"]
        if not isinstance(labels_in, list):
            raise RuntimeError("labels must be a list of strings")
        out = replace(out, labels=_parse_labels([str(x) for x in labels_in]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=_positive_int(str(data["max_image_mb"]), "max_image_mb"))
    if "max_image_side_px" in data:
        out = replace(
            out,
            max_image_side_px=_positive_int(str(data["max_image_side_px"]), "max_image_side_px"),
        )
    if "predict_timeout_seconds" in data:
        out = replace(
            out,
            predict_timeout_seconds=_positive_int(
                str(data["predict_timeout_seconds"]), "predict_timeout_seconds"
            ),
        )
    if "serialize_requests" in data:
        out = replace(out, serialize_requests=bool(data["serialize_requests"]))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _positive_int(raw: str, name: str) -> int:
    try:
        v = int(raw.strip())
    except ValueError:
        raise RuntimeError(f"{name} must be an integer") from None
    if v < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return v


def _parse_labels(items: list[str]) -> tuple[str, ...]:
    labels = tuple(x.strip() for x in items if x.strip())
    if len(labels) < 2:
        raise RuntimeError("at least two labels are required")
    return labels


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classifier.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classifier.max_image_side_px),
        )
