"""Workflows shipped with the engine."""

from __future__ import annotations

from typing import List

from .catalog import parse_definition
from .models import WorkflowDefinition

HIGH_VALUE_APPROVAL = {
    "id": "high_value_approval",
    "name": "High Value Transaction Approval",
    "description": "Approval workflow for transactions above 1 Lakh",
    "category": "financial",
    "triggers": [
        {
            "type": "amount_threshold",
            "condition": {"field": "amount", "operator": "greater_than", "value": 100000},
            "priority": "high",
        }
    ],
    "steps": [
        {
            "id": "manager_approval",
            "name": "Manager Approval",
            "type": "approval",
            "config": {"approval_type": "single", "approvers": ["MANAGER"]},
            "on_success": [{"type": "update_status", "config": {"status": "manager_approved"}}],
            "on_failure": [
                {"type": "send_notification", "config": {"template": "approval_rejected"}}
            ],
            "assigned_to": {"type": "role", "target": "MANAGER"},
        },
        {
            "id": "partner_approval",
            "name": "Partner Final Approval",
            "type": "approval",
            "config": {"approval_type": "single", "approvers": ["PARTNER"]},
            "dependencies": ["manager_approval"],
            "on_success": [{"type": "update_status", "config": {"status": "approved"}}],
            "on_failure": [
                {"type": "send_notification", "config": {"template": "final_rejection"}}
            ],
            "assigned_to": {"type": "role", "target": "PARTNER"},
        },
    ],
    "metadata": {
        "tags": ["finance", "approval", "high-value"],
        "business_rules": ["Financial control", "Segregation of duties"],
        "compliance_requirements": ["Internal audit", "Financial oversight"],
        "estimated_duration": 240,
        "complexity": "moderate",
        "risk_level": "high",
    },
}

COMPLIANCE_REVIEW = {
    "id": "compliance_review",
    "name": "Compliance Document Review",
    "description": "Review workflow for compliance-sensitive documents",
    "category": "compliance",
    "triggers": [
        {
            "type": "compliance_flag",
            "condition": {"field": "compliance_score", "operator": "less_than", "value": 0.8},
            "priority": "critical",
        }
    ],
    "steps": [
        {
            "id": "compliance_check",
            "name": "Compliance Officer Review",
            "type": "validation",
            "config": {"rules": ["gst_compliance", "pan_compliance", "regulatory_compliance"]},
            "on_success": [{"type": "update_status", "config": {"status": "compliant"}}],
            "on_failure": [
                {"type": "create_task", "config": {"template": "compliance_remediation"}}
            ],
            "assigned_to": {"type": "role", "target": "COMPLIANCE_OFFICER"},
        }
    ],
    "metadata": {
        "tags": ["compliance", "regulatory", "review"],
        "business_rules": ["Regulatory compliance", "Risk management"],
        "compliance_requirements": ["ICAI standards", "GST compliance", "ROC requirements"],
        "estimated_duration": 180,
        "complexity": "complex",
        "risk_level": "critical",
    },
}


def builtin_workflows() -> List[WorkflowDefinition]:
    return [parse_definition(HIGH_VALUE_APPROVAL), parse_definition(COMPLIANCE_REVIEW)]
