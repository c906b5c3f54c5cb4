"""Static ImageNet label vocabulary for the stock (untrained) classifier."""

from __future__ import annotations

from functools import lru_cache
from importlib import resources

IMAGENET_NUM_CLASSES: int = 1000


@lru_cache(maxsize=1)
def imagenet_classes() -> tuple[str, ...]:
    """Return the 1000 ImageNet class names, indexed by class id."""
    text = resources.files("retrainex.ml").joinpath("imagenet_classes.txt").read_text(encoding="utf-8")
    names = tuple(line.strip() for line in text.splitlines() if line.strip())
    if len(names) != IMAGENET_NUM_CLASSES:
        raise RuntimeError(f"Expected {IMAGENET_NUM_CLASSES} ImageNet labels, found {len(names)}")
    return names
