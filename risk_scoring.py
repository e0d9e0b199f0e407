"""Risk scoring and classification shared by every risk display and workflow.

Score = likelihood x severity on a 5x5 matrix, bucketed into four fixed levels.
Levels are always derived at read time and never stored.
"""

from dataclasses import dataclass
from enum import Enum


LIKELIHOOD_RANGE = (1, 5)
SEVERITY_RANGE = (1, 5)


class InvalidRiskFactor(ValueError):
    """Raised when a likelihood or severity value is outside the 1-5 scale"""


class RiskLevel(Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    VERY_HIGH = "Very High"

    def __str__(self):
        return self.value

    @property
    def color(self):
        return _LEVEL_COLORS[self]

    @property
    def rank(self):
        """Ordering position, 0 for Low up to 3 for Very High"""
        return _LEVEL_ORDER.index(self)

    def to_dict(self):
        return {'level': self.value, 'color': self.color}


_LEVEL_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.VERY_HIGH)

_LEVEL_COLORS = {
    RiskLevel.LOW: 'green',
    RiskLevel.MEDIUM: 'yellow',
    RiskLevel.HIGH: 'orange',
    RiskLevel.VERY_HIGH: 'red',
}

# Upper bounds are inclusive. Anything above the last bound is Very High.
RISK_BANDS = (
    (4, RiskLevel.LOW),
    (9, RiskLevel.MEDIUM),
    (16, RiskLevel.HIGH),
)

FOLLOW_UP_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.VERY_HIGH})


def calculate_risk_score(likelihood, severity):
    """Multiply likelihood by severity. No clamping or validation."""
    return likelihood * severity


def classify_risk(score):
    """Map a risk score onto its RiskLevel.

    Scores of zero or below land in Low and scores above 25 land in
    Very High; neither raises.
    """
    for upper_bound, level in RISK_BANDS:
        if score <= upper_bound:
            return level
    return RiskLevel.VERY_HIGH


@dataclass(frozen=True)
class MitigationAssessment:
    before_score: int
    after_score: int
    before_level: RiskLevel
    after_level: RiskLevel
    needs_follow_up: bool

    @property
    def risk_reduction(self):
        return self.before_score - self.after_score


def assess_mitigation(before_score, after_score):
    """Compare before/after-controls scores.

    Only the residual (after-controls) level decides whether a corrective
    action is required; the before score is carried for display.
    """
    after_level = classify_risk(after_score)
    return MitigationAssessment(
        before_score=before_score,
        after_score=after_score,
        before_level=classify_risk(before_score),
        after_level=after_level,
        needs_follow_up=after_level in FOLLOW_UP_LEVELS,
    )


def needs_follow_up(before_score, after_score):
    return assess_mitigation(before_score, after_score).needs_follow_up


def _coerce_rating(name, value, bounds):
    if isinstance(value, bool) or value is None:
        raise InvalidRiskFactor(f"{name} must be an integer, got {value!r}")

    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            raise InvalidRiskFactor(f"{name} must be an integer, got {text!r}") from None
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidRiskFactor(f"{name} must be a whole number, got {value!r}")
        value = int(value)
    elif not isinstance(value, int):
        raise InvalidRiskFactor(f"{name} must be an integer, got {type(value).__name__}")

    low, high = bounds
    if not low <= value <= high:
        raise InvalidRiskFactor(f"{name} must be between {low} and {high}, got {value}")
    return value


@dataclass(frozen=True)
class RiskFactor:
    """One hazard's likelihood/severity pair at one point in time."""

    likelihood: int
    severity: int

    @classmethod
    def from_values(cls, likelihood, severity):
        """Build a RiskFactor from form or database values.

        Accepts ints, integral floats and numeric strings. Raises
        InvalidRiskFactor for anything outside the 1-5 scale.
        """
        return cls(
            likelihood=_coerce_rating('likelihood', likelihood, LIKELIHOOD_RANGE),
            severity=_coerce_rating('severity', severity, SEVERITY_RANGE),
        )

    @property
    def score(self):
        return calculate_risk_score(self.likelihood, self.severity)

    @property
    def level(self):
        return classify_risk(self.score)

    def to_dict(self):
        level = self.level
        return {
            'likelihood': self.likelihood,
            'severity': self.severity,
            'score': self.score,
            'level': level.value,
            'color': level.color,
        }


@dataclass(frozen=True)
class HazardAssessment:
    before_controls: RiskFactor
    after_controls: RiskFactor

    @classmethod
    def from_record(cls, record):
        """Read the four raw ratings from a hazard record mapping"""
        return cls(
            before_controls=RiskFactor.from_values(
                record['likelihood_before'], record['severity_before']
            ),
            after_controls=RiskFactor.from_values(
                record['likelihood_after'], record['severity_after']
            ),
        )

    @property
    def mitigation(self):
        return assess_mitigation(self.before_controls.score, self.after_controls.score)

    @property
    def needs_follow_up(self):
        return self.mitigation.needs_follow_up

    @property
    def risk_reduction(self):
        return self.mitigation.risk_reduction

    def to_dict(self):
        mitigation = self.mitigation
        return {
            'before_controls': self.before_controls.to_dict(),
            'after_controls': self.after_controls.to_dict(),
            'risk_reduction': mitigation.risk_reduction,
            'needs_follow_up': mitigation.needs_follow_up,
        }


def risk_matrix(ratings=range(1, 6)):
    """5x5 grid of matrix cells, one row per severity"""
    rows = []
    for severity in ratings:
        row = []
        for likelihood in ratings:
            score = calculate_risk_score(likelihood, severity)
            level = classify_risk(score)
            row.append({
                'likelihood': likelihood,
                'severity': severity,
                'score': score,
                'level': level.value,
                'color': level.color,
            })
        rows.append(row)
    return rows
