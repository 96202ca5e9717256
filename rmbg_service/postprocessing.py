"""Optional edge-aware cleanup of RMBG alpha masks."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefineOptions:
    edge_band_low: float = 0.08
    edge_band_high: float = 0.92
    edge_smooth_blend: float = 0.55
    bilateral_sigma_color: float = 28.0
    alpha_band_pull: float = 0.015
    cc_keep_threshold: float = 0.05

    @classmethod
    def from_settings(cls, settings: config.Settings) -> "RefineOptions":
        band_low, band_high = settings.edge_band_low, settings.edge_band_high
        if band_high <= band_low:
            logger.warning("refine: edge band %.3f..%.3f is empty, using 0.05..0.95", band_low, band_high)
            band_low, band_high = 0.05, 0.95
        return cls(
            edge_band_low=band_low,
            edge_band_high=band_high,
            edge_smooth_blend=settings.edge_smooth_blend,
            bilateral_sigma_color=settings.bilateral_sigma_color,
            alpha_band_pull=settings.alpha_band_pull,
            cc_keep_threshold=settings.cc_keep_threshold,
        )


def _band_mask(alpha: np.ndarray, low: float, high: float) -> np.ndarray:
    return (alpha > low) & (alpha < high)


def _keep_largest_component(alpha: np.ndarray, threshold: float) -> tuple[np.ndarray, int]:
    """Zero out all but the largest connected component above threshold."""
    mask = (alpha > threshold).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
    component_count = max(num_labels - 1, 0)
    if num_labels <= 1:
        return alpha, component_count

    largest_label = 1 + np.argmax(stats[1:, cv2.CC_STAT_AREA])
    keep = labels == largest_label
    return np.where(keep, alpha, 0.0), component_count


def _smooth_edge_band(
    alpha: np.ndarray,
    band_low: float,
    band_high: float,
    blend: float,
    bilateral_sigma_color: float,
) -> np.ndarray:
    """Limit smoothing to the uncertain edge band to avoid halos."""
    band = _band_mask(alpha, band_low, band_high)
    if not np.any(band):
        return alpha

    alpha_out = alpha.copy()
    alpha_u8 = np.clip(alpha * 255.0, 0, 255).astype(np.uint8)
    median = cv2.medianBlur(alpha_u8, 3)
    bilateral = cv2.bilateralFilter(median, d=3, sigmaColor=bilateral_sigma_color, sigmaSpace=2)

    smooth = np.clip(bilateral.astype(np.float32) / 255.0, 0.0, 1.0)
    alpha_out[band] = alpha_out[band] * (1.0 - blend) + smooth[band] * blend
    return alpha_out


def _pull_edge_haze(alpha: np.ndarray, band_low: float, pull: float) -> np.ndarray:
    """Slightly contract low-opacity edge haze without hardening hair."""
    band = (alpha > band_low) & (alpha < 0.5)
    if not np.any(band):
        return alpha
    alpha_out = alpha.copy()
    alpha_out[band] = np.clip(alpha_out[band] - pull * (1.0 - alpha_out[band]), 0.0, 1.0)
    return alpha_out


def _maybe_dump_debug(mask_u8: np.ndarray, debug_dir: Path) -> None:
    """Write the refined mask when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "mask.png"), mask_u8)
        logger.debug("refine: wrote debug mask to %s", debug_dir)
    except (OSError, cv2.error) as exc:
        logger.warning("refine: failed to write debug outputs: %s", exc)


def refine_mask(
    mask: np.ndarray,
    options: Optional[RefineOptions] = None,
    settings: Optional[config.Settings] = None,
) -> np.ndarray:
    """Clean stray islands and soften the edge band of a uint8 mask."""
    settings = settings or config.get_settings()
    options = options or RefineOptions.from_settings(settings)

    alpha = mask.astype(np.float32) / 255.0
    alpha, component_count = _keep_largest_component(alpha, threshold=options.cc_keep_threshold)
    logger.debug(
        "refine: %d connected components above %.3f alpha", component_count, options.cc_keep_threshold
    )

    alpha = _smooth_edge_band(
        alpha,
        band_low=options.edge_band_low,
        band_high=options.edge_band_high,
        blend=options.edge_smooth_blend,
        bilateral_sigma_color=options.bilateral_sigma_color,
    )
    if options.alpha_band_pull > 0:
        alpha = _pull_edge_haze(alpha, band_low=options.edge_band_low, pull=options.alpha_band_pull)

    refined = np.rint(np.clip(alpha * 255.0, 0, 255)).astype(np.uint8)
    if settings.debug:
        _maybe_dump_debug(refined, Path(settings.debug_output_dir))
    return refined
