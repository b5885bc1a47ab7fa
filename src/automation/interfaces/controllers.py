"""
Automation Controllers (API Routes)
====================================

FastAPI routes for rule management, templates, dry runs, manual runs and
event intake.

Controllers are thin - they delegate to application services. Errors are
raised as application exceptions and mapped to HTTP status codes by the
global exception handler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status

from src.automation.application import AutomationOrchestrator, RuleService
from src.automation.application.dto import (
    BulkOperationRequest, BulkOperationResponse, CloneTemplateRequest,
    EventProcessedResponse, ExecuteRuleRequest, LifecycleEventRequest, Pagination,
    RuleCreateDTO, RuleEvaluationResponse, RuleListResponse, RuleResponse, RuleStatsResponse,
    RuleUpdateDTO, ScanResponse, TemplateListResponse, TemplateResponse,
    TestRuleRequest, TestRuleResponse,
)
from src.automation.infrastructure import LifecycleEventBus
from src.config import TriggerType
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/automation", tags=["Workflow Automation"])


# ========== Example payloads for Swagger ==========

RULE_CREATE_EXAMPLE = {
    "name": "Assign urgent tickets to on-call",
    "description": "Route urgent tickets straight to the on-call agent",
    "trigger": {"type": "ticket_created", "params": {}},
    "conditions": [
        {"field": "priority", "operator": "equals", "value": "urgent"}
    ],
    "actions": [
        {"type": "assign_ticket", "parameters": {"assignee": "agent-oncall"}},
        {"type": "add_comment", "parameters": {"comment": "Auto-assigned by {{rule.id}}"}}
    ],
    "categories": [],
    "tags": [],
    "is_active": True,
    "execution_order": 0,
    "max_executions": -1,
    "stop_on_first_match": False
}

TEST_RULE_RESPONSE_EXAMPLE = {
    "rule_id": "0b8f7e64-6f0e-4f3c-9d55-3c4a1f7c2b10",
    "ticket_id": "T1",
    "matches_trigger": True,
    "matches_conditions": True,
    "should_execute": True
}


# ========== Dependencies ==========

def get_rule_service(request: Request) -> RuleService:
    """Rule service wired in the application lifespan."""
    return request.app.state.rule_service


def get_orchestrator(request: Request) -> AutomationOrchestrator:
    return request.app.state.orchestrator


def get_event_bus(request: Request) -> LifecycleEventBus:
    return request.app.state.event_bus


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity recorded as the rule author."""
    return x_user_id or "system"


# ========== Rules ==========

@router.get(
    "/rules",
    response_model=RuleListResponse,
    summary="List automation rules"
)
async def list_rules(
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    trigger_type: Optional[TriggerType] = Query(None, description="Filter by trigger type"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: RuleService = Depends(get_rule_service)
):
    rules, total = await service.list_rules(
        is_active=is_active,
        trigger_type=trigger_type.value if trigger_type else None,
        limit=limit,
        offset=offset
    )
    return RuleListResponse(
        rules=[RuleResponse.from_domain(r) for r in rules],
        pagination=Pagination(limit=limit, offset=offset, total=total)
    )


@router.get("/rules/{rule_id}", response_model=RuleResponse, summary="Get a rule")
async def get_rule(rule_id: str, service: RuleService = Depends(get_rule_service)):
    return RuleResponse.from_domain(await service.get_rule(rule_id))


@router.post(
    "/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a rule",
    description="""
    Create an automation rule.

    **Trigger types**: `ticket_created`, `ticket_updated`, `comment_added`,
    `status_changed`, `priority_changed`, `assigned_changed`, `time_based`,
    `sla_breached`

    **Operators**: `equals`, `not_equals`, `contains`, `not_contains`,
    `greater_than`, `less_than`

    **Actions**: `assign_ticket`, `change_status`, `change_priority`, `add_tag`,
    `remove_tag`, `send_email`, `send_notification`, `escalate_ticket`,
    `add_comment`

    Invalid definitions are rejected with 422 and every problem listed.
    """,
    openapi_extra={
        "requestBody": {"content": {"application/json": {"example": RULE_CREATE_EXAMPLE}}}
    }
)
async def create_rule(
    dto: RuleCreateDTO,
    service: RuleService = Depends(get_rule_service),
    user: str = Depends(get_current_user)
):
    return RuleResponse.from_domain(await service.create_rule(dto, created_by=user))


@router.put("/rules/{rule_id}", response_model=RuleResponse, summary="Update a rule")
async def update_rule(
    rule_id: str,
    dto: RuleUpdateDTO,
    service: RuleService = Depends(get_rule_service)
):
    return RuleResponse.from_domain(await service.update_rule(rule_id, dto))


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a rule"
)
async def delete_rule(rule_id: str, service: RuleService = Depends(get_rule_service)):
    await service.delete_rule(rule_id)


@router.patch(
    "/rules/{rule_id}/toggle",
    response_model=RuleResponse,
    summary="Activate or deactivate a rule"
)
async def toggle_rule(rule_id: str, service: RuleService = Depends(get_rule_service)):
    return RuleResponse.from_domain(await service.toggle_rule(rule_id))


@router.post(
    "/rules/{rule_id}/test",
    response_model=TestRuleResponse,
    summary="Dry-run a rule against a ticket",
    description="""
    Evaluate the rule's trigger and conditions against a ticket without
    executing actions or touching execution counters.
    """,
    responses={
        200: {
            "description": "Dry-run verdict",
            "content": {"application/json": {"example": TEST_RULE_RESPONSE_EXAMPLE}}
        }
    }
)
async def test_rule(
    rule_id: str,
    body: TestRuleRequest,
    orchestrator: AutomationOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.test_rule(rule_id, body.ticket_id)
    return TestRuleResponse.from_domain(rule_id, body.ticket_id, result)


@router.post(
    "/rules/{rule_id}/execute",
    response_model=RuleEvaluationResponse,
    summary="Run a rule against a ticket now",
    description="""
    Run the full check-and-execute cycle of one rule against a ticket.
    Actions are dispatched and execution statistics updated when the rule
    fires; otherwise `skipped_reason` says why it did not.
    """
)
async def execute_rule(
    rule_id: str,
    body: ExecuteRuleRequest,
    orchestrator: AutomationOrchestrator = Depends(get_orchestrator)
):
    evaluation = await orchestrator.execute_rule(rule_id, body.ticket_id)
    return RuleEvaluationResponse.from_domain(evaluation)


@router.get(
    "/rules/{rule_id}/stats",
    response_model=RuleStatsResponse,
    summary="Execution statistics for a rule"
)
async def get_rule_stats(rule_id: str, service: RuleService = Depends(get_rule_service)):
    return RuleStatsResponse.from_domain(await service.get_rule_stats(rule_id))


@router.post(
    "/rules/bulk",
    response_model=BulkOperationResponse,
    summary="Bulk activate, deactivate or delete rules"
)
async def bulk_operation(
    body: BulkOperationRequest,
    service: RuleService = Depends(get_rule_service)
):
    affected = await service.bulk_operation(body.operation, body.rule_ids)
    return BulkOperationResponse(operation=body.operation, affected=affected)


# ========== Templates ==========

@router.get("/templates", response_model=TemplateListResponse, summary="List rule templates")
async def list_templates(service: RuleService = Depends(get_rule_service)):
    return TemplateListResponse(
        templates=[TemplateResponse.from_domain(t) for t in service.list_templates()]
    )


@router.post(
    "/templates/{template_id}/clone",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a rule from a template"
)
async def clone_template(
    template_id: str,
    body: CloneTemplateRequest,
    service: RuleService = Depends(get_rule_service),
    user: str = Depends(get_current_user)
):
    rule = await service.clone_template(template_id, body, created_by=user)
    return RuleResponse.from_domain(rule)


# ========== Event intake ==========

@router.post(
    "/events",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a ticket lifecycle event",
    description="""
    Queue a lifecycle event for asynchronous rule evaluation.

    With `?wait=true` the event is processed inline and the pass report is
    returned with 200 instead.
    """
)
async def submit_event(
    body: LifecycleEventRequest,
    response: Response,
    wait: bool = Query(False, description="Process inline and return the report"),
    bus: LifecycleEventBus = Depends(get_event_bus),
    orchestrator: AutomationOrchestrator = Depends(get_orchestrator)
):
    event = body.to_domain()
    if wait:
        report = await orchestrator.handle_event(event)
        response.status_code = status.HTTP_200_OK
        return EventProcessedResponse.from_domain(report)

    bus.publish(event)
    logger.info(
        "Lifecycle event queued",
        extra={"event_type": event.type.value, "ticket_id": event.ticket_id}
    )
    return {"status": "accepted", "event_type": event.type.value, "ticket_id": event.ticket_id}


@router.post("/scan", response_model=ScanResponse, summary="Run the time-based/SLA scan now")
async def run_scan(orchestrator: AutomationOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.run_scan()
    return ScanResponse(
        tickets_scanned=report.tickets_scanned,
        events_synthesized=report.events_synthesized,
        rules_fired=report.rules_fired
    )
