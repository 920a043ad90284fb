"""Generate tailored cover letters through the oracle (or fallback template)."""
from __future__ import annotations

from autoapply.breaker import CircuitBreaker
from autoapply.errors import CircuitOpen, OracleUnavailable
from autoapply.log import get_logger
from autoapply.models import JobCandidate, UserProfile
from autoapply.oracle import ScoringOracle
from autoapply.retry import CallTimeout, call_with_timeout

log = get_logger(__name__)

_LANGUAGE_NAMES = {"en": "English", "fr": "French"}


def _candidate_name(profile: UserProfile) -> str:
    return profile.full_name.strip() or "Candidate"


def generate_cover_letter(
    oracle: ScoringOracle,
    profile: UserProfile,
    job: JobCandidate,
    *,
    timeout: float = 15.0,
    breaker: CircuitBreaker | None = None,
) -> str:
    """Oracle-written letter, or the template when the oracle call fails or times out."""
    name = _candidate_name(profile)
    skills = profile.criteria.skills if profile.criteria else []
    language = _LANGUAGE_NAMES.get(job.detected_language, "English")
    prompt = f"""Write a short, professional cover letter (under 200 words) in {language} for this role.
Candidate name: {name}
Candidate summary: {profile.cv_analysis[:800] or profile.cv_text[:800]}
Key skills: {', '.join(skills[:8])}
Job title: {job.title}
Company: {job.company}
Job description (excerpt): {job.description[:1500]}

Mention 2–3 relevant skills. End with "Best regards," followed by {name}. Do not use placeholders."""
    breaker = breaker or CircuitBreaker("oracle:generate")
    try:
        letter = breaker.call(call_with_timeout, oracle.generate, timeout, prompt)
    except (OracleUnavailable, CallTimeout, CircuitOpen) as exc:
        log.debug("Cover letter generation unavailable (%s), using template", exc)
    except Exception as exc:
        log.warning("Cover letter generation failed for %s @ %s: %r", job.title, job.company, exc)
    else:
        if isinstance(letter, str) and letter.strip():
            log.info("Cover letter generated for %s @ %s", job.title, job.company)
            return letter
    return fallback_letter(profile, job)


def fallback_letter(profile: UserProfile, job: JobCandidate) -> str:
    skills = ", ".join((profile.criteria.skills if profile.criteria else [])[:5])
    name = _candidate_name(profile)
    if job.detected_language == "fr":
        return f"""Madame, Monsieur,

Je souhaite postuler au poste de {job.title} chez {job.company}.

Mon expérience correspond à vos besoins, notamment : {skills}.

Je serais ravi(e) d'échanger avec vous sur ma candidature.

Cordialement,
{name}"""
    return f"""Dear Hiring Team,

I am writing to apply for the {job.title} position at {job.company}.

My experience aligns with your requirements, including: {skills}.

I would welcome the opportunity to discuss how my background can contribute to your team.

Best regards,
{name}"""
