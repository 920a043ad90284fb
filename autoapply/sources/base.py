from abc import ABC, abstractmethod

from autoapply.models import JobCandidate, JobCriteria

_FRENCH_WORDS = {
    "le", "la", "les", "de", "du", "des", "un", "une", "et", "ou", "pour",
    "avec", "dans", "sur", "par", "sans", "nous", "vous", "poste", "entreprise",
}
_ENGLISH_WORDS = {
    "the", "and", "or", "for", "with", "in", "on", "by", "without", "to",
    "from", "at", "of", "we", "you", "role", "company",
}


def detect_language(text: str) -> str:
    """Stop-word vote over the first 80 words; ``en`` unless French wins."""
    words = (text or "").lower().split()[:80]
    fr = sum(1 for w in words if w in _FRENCH_WORDS)
    en = sum(1 for w in words if w in _ENGLISH_WORDS)
    return "fr" if fr > en else "en"


class JobSource(ABC):
    name = "unknown"

    @abstractmethod
    def list_candidates(self, criteria: JobCriteria, limit: int = 30) -> list[JobCandidate]:
        """Best-effort, possibly stale listing; duplicates are allowed."""
