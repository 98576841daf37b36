"""Approval rule resolution.

Selects the workflow an entity must go through, if any. Rules are loaded
from the database on every call; no process-wide cache is involved.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from safee.core.errors import NotFoundError, ValidationError
from safee.db.base import json_safe
from safee.db.models import ApprovalRule, ApprovalWorkflow
from .conditions import Condition, describe, evaluate, parse_condition, validate_conditions

logger = logging.getLogger(__name__)


@dataclass
class RuleMatch:
    """The winning rule and the workflow it resolves to."""
    rule: ApprovalRule
    workflow: ApprovalWorkflow
    condition: Condition

    @property
    def workflow_id(self) -> UUID:
        return self.workflow.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": str(self.rule.id),
            "workflow_id": str(self.workflow.id),
            "priority": self.rule.priority,
            "condition": describe(self.condition),
        }


@dataclass
class RuleEvaluation:
    """Per-rule outcome, kept for explain/debug output."""
    rule_id: UUID
    priority: int
    matched: bool
    skipped_reason: Optional[str] = None


@dataclass
class ResolutionTrace:
    match: Optional[RuleMatch] = None
    evaluations: List[RuleEvaluation] = field(default_factory=list)


class ApprovalRuleResolver:
    """
    Resolves (organization, entity type, attributes) to a workflow.

    Rules are evaluated in descending priority (older rule first on ties);
    the first rule whose condition matches wins. No match is a normal
    outcome: the entity proceeds without approval.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(
        self,
        organization_id: UUID,
        entity_type: str,
        attributes: Dict[str, Any],
    ) -> Optional[RuleMatch]:
        """
        Find the matching rule for an entity.

        Args:
            organization_id: Organization scope
            entity_type: Entity type (invoice, audit_plan, ...)
            attributes: Entity attributes the conditions are evaluated against

        Returns:
            RuleMatch, or None when no rule matches
        """
        return self.explain(organization_id, entity_type, attributes).match

    def explain(
        self,
        organization_id: UUID,
        entity_type: str,
        attributes: Dict[str, Any],
    ) -> ResolutionTrace:
        """Resolve, recording the outcome of every rule considered."""
        trace = ResolutionTrace()
        context = dict(attributes)
        context.setdefault("entity_type", entity_type)

        for rule in self._load_rules(organization_id, entity_type):
            if not rule.workflow.is_active:
                trace.evaluations.append(
                    RuleEvaluation(rule.id, rule.priority, False, "workflow inactive")
                )
                continue

            condition = parse_condition(rule.conditions)
            matched = evaluate(condition, context)
            trace.evaluations.append(RuleEvaluation(rule.id, rule.priority, matched))

            if matched:
                trace.match = RuleMatch(rule=rule, workflow=rule.workflow, condition=condition)
                logger.info(
                    f"Matched approval rule {rule.id} (priority {rule.priority}) "
                    f"to workflow {rule.workflow_id} for {entity_type}"
                )
                return trace

        logger.debug(f"No approval rule matched for {entity_type} in organization {organization_id}")
        return trace

    def create_rule(
        self,
        organization_id: UUID,
        entity_type: str,
        workflow_id: UUID,
        conditions: Dict[str, Any],
        *,
        priority: int = 0,
        name: Optional[str] = None,
    ) -> ApprovalRule:
        """
        Create a rule after validating its condition payload.

        Raises:
            ValidationError: Malformed conditions or entity type mismatch
            NotFoundError: Workflow does not exist in this organization
        """
        validate_conditions(conditions)

        workflow = self.db.query(ApprovalWorkflow).filter(
            ApprovalWorkflow.id == workflow_id,
            ApprovalWorkflow.organization_id == organization_id,
        ).first()
        if not workflow:
            raise NotFoundError(f"Approval workflow {workflow_id} not found")
        if workflow.entity_type != entity_type:
            raise ValidationError(
                f"Workflow {workflow_id} handles {workflow.entity_type}, not {entity_type}"
            )

        rule = ApprovalRule(
            organization_id=organization_id,
            entity_type=entity_type,
            workflow_id=workflow_id,
            conditions=json_safe(conditions),
            priority=priority,
            name=name,
        )
        self.db.add(rule)
        self.db.flush()
        return rule

    def _load_rules(self, organization_id: UUID, entity_type: str) -> List[ApprovalRule]:
        return (
            self.db.query(ApprovalRule)
            .filter(
                ApprovalRule.organization_id == organization_id,
                ApprovalRule.entity_type == entity_type,
                ApprovalRule.is_active == True,
            )
            .order_by(ApprovalRule.priority.desc(), ApprovalRule.created_at.asc())
            .all()
        )
