from fnmatch import fnmatchcase

from pipeflow.models import Event, TriggerRule, WorkflowDefinition

GLOB_CHARS = ("*", "?", "[")


def branch_matches(branch: str, pattern: str) -> bool:
    """Exact comparison unless the pattern carries a glob wildcard."""
    if any(c in pattern for c in GLOB_CHARS):
        return fnmatchcase(branch, pattern)
    return branch == pattern


def matches_any(branch: str, patterns) -> bool:
    return any(branch_matches(branch, p) for p in patterns)


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.kind != event.kind:
        return False
    if matches_any(event.branch, rule.branches_ignore):
        return False
    # No branch filter means every branch, as on GitHub.
    if not rule.branches:
        return True
    return matches_any(event.branch, rule.branches)


def matches(event: Event, workflow: WorkflowDefinition) -> set:
    """Return every (rule, job name) pair the event activates.

    A push and a pull_request for the same change are matched independently
    and are not de-duplicated here.
    """
    pairs = set()
    for rule in workflow.triggers:
        if rule_matches(rule, event):
            for job_name in workflow.jobs:
                pairs.add((rule, job_name))
    return pairs


def matching_jobs(event: Event, workflow: WorkflowDefinition) -> list[str]:
    """Job names activated by the event, one entry per job, in document order."""
    hit = {job_name for _, job_name in matches(event, workflow)}
    return [name for name in workflow.jobs if name in hit]
