"""Human-in-the-loop handling of verification challenges."""

from pagerun.interrupt.coordinator import InterruptCoordinator, PauseHandle, ResumeResult
from pagerun.interrupt.detector import ChallengeDetection, ChallengeDetector

__all__ = [
    "ChallengeDetection",
    "ChallengeDetector",
    "InterruptCoordinator",
    "PauseHandle",
    "ResumeResult",
]
