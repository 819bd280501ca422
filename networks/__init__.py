"""Neural network building blocks for the GAN playground."""

from .ensembles import ENSEMBLE_BUILDERS, Ensemble, Phase, build_ensemble
from .models import SubModel, build_classifier, build_conditional_generator, build_discriminator, build_generator

__all__ = [
    "ENSEMBLE_BUILDERS",
    "Ensemble",
    "Phase",
    "SubModel",
    "build_classifier",
    "build_conditional_generator",
    "build_discriminator",
    "build_ensemble",
    "build_generator",
]
