"""Relevance scoring for narrative key findings."""

from __future__ import annotations

from collections.abc import Iterable

from knowledge.rules import RuleSet


def score_key_finding(
    finding: str,
    index: int,
    rules: RuleSet,
    problem_names: Iterable[str] = (),
) -> float:
    """Recency plus language weights, penalizing no-data and problem-list echoes."""
    score = index * rules.finding_recency_weight
    score += rules.finding_weight(finding)
    if rules.is_no_data(finding):
        score += rules.finding_no_data_penalty
    lowered = finding.lower()
    for name in problem_names:
        if name and name.lower() in lowered:
            score += rules.finding_problem_duplicate_penalty
            break
    return score


def prune_key_findings(
    findings: list[str],
    max_findings: int,
    rules: RuleSet,
    problem_names: Iterable[str] = (),
) -> list[str]:
    """Keep the highest scoring findings, best first; short lists pass through."""
    if len(findings) <= max_findings:
        return list(findings)
    names = list(problem_names)
    scored = [
        (score_key_finding(finding, index, rules, names), finding) for index, finding in enumerate(findings)
    ]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [finding for _, finding in scored[:max_findings]]
