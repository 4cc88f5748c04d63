from collections.abc import Awaitable, Callable
import logging
from typing import Any

from fastapi import APIRouter, FastAPI, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from starlette.requests import Request
from starlette.responses import JSONResponse

from logic.rule_logic import RuleLogic
from models.api import (
    AutomationContext,
    AutomationEvent,
    AutomationSuggestion,
    EvaluateConditionsRequest,
    OperationRecord,
    ParseWorkflowRequest,
    SaveWorkflowRequest,
    SceneCandidate,
    SceneLearningContext,
    ToggleRuleRequest,
    UpdateRuleRequest,
)
from proposals.engine import ProposalEngine
from rules.conditions import ConditionEvaluator
from rules.parser import WorkflowParser
from rules.scheduler import RuleNotFoundError
from scenes.learning import SceneLearningEngine
from switchbot import SwitchBotClient

logger = logging.getLogger(__name__)


def _wire(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_wire(v) for v in value]
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    return value


def ok(data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": _wire(data)}, status_code=status_code)


def fail(error: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


async def respond(action: str, call: Callable[[], Awaitable[Any]]) -> JSONResponse:
    """Runs `call` and maps its outcome onto the response envelope."""
    try:
        return ok(await call())
    except RuleNotFoundError as e:
        return fail(str(e), 404)
    except ValueError as e:
        return fail(str(e), 400)
    except Exception:
        logger.exception("Failed to %s", action)
        return fail(f"Failed to {action}", 500)


def create_router(
    rule_logic: RuleLogic,
    parser: WorkflowParser,
    evaluator: ConditionEvaluator,
    proposals: ProposalEngine,
    learning: SceneLearningEngine,
    switchbot: SwitchBotClient,
) -> APIRouter:
    router = APIRouter()

    # Workflows and rules
    @router.post("/workflow/parse")
    async def parse_workflow(body: ParseWorkflowRequest) -> JSONResponse:
        return await respond(
            "parse workflow",
            lambda: parser.parse_workflow(body.natural_language, body.user_id),
        )

    @router.post("/workflow/save")
    async def save_workflow(body: SaveWorkflowRequest) -> JSONResponse:
        return await respond(
            "save workflow", lambda: rule_logic.save_workflow(body.workflow)
        )

    @router.get("/workflow/rules")
    async def list_rules() -> JSONResponse:
        rules = rule_logic.get_rules()
        return ok({"rules": rules, "count": len(rules)})

    @router.get("/workflow/rules/{rule_id}")
    async def get_rule(rule_id: str) -> JSONResponse:
        async def call():
            return rule_logic.get_rule(rule_id)

        return await respond("get rule", call)

    @router.put("/workflow/rules/{rule_id}")
    async def update_rule(rule_id: str, body: UpdateRuleRequest) -> JSONResponse:
        return await respond(
            "update rule", lambda: rule_logic.update_rule(rule_id, body.rule)
        )

    @router.delete("/workflow/rules/{rule_id}")
    async def delete_rule(rule_id: str) -> JSONResponse:
        async def call():
            await rule_logic.delete_rule(rule_id)
            return {"ruleId": rule_id}

        return await respond("delete rule", call)

    @router.patch("/workflow/rules/{rule_id}/toggle")
    async def toggle_rule(rule_id: str, body: ToggleRuleRequest) -> JSONResponse:
        return await respond(
            "toggle rule", lambda: rule_logic.toggle_rule(rule_id, body.enabled)
        )

    @router.post("/workflow/rules/{rule_id}/execute")
    async def execute_rule(rule_id: str) -> JSONResponse:
        return await respond("execute rule", lambda: rule_logic.execute_rule(rule_id))

    @router.get("/workflow/rules/{rule_id}/history")
    async def rule_history(rule_id: str, limit: int = Query(20, ge=0)) -> JSONResponse:
        async def call():
            history, total = rule_logic.get_history(rule_id, limit)
            return {"history": history, "count": len(history), "total": total}

        return await respond("get execution history", call)

    @router.post("/workflow/conditions/evaluate")
    async def evaluate_conditions(body: EvaluateConditionsRequest) -> JSONResponse:
        return await respond(
            "evaluate conditions", lambda: evaluator.evaluate_conditions(body.conditions)
        )

    # Proposals
    @router.post("/automation/analyze")
    async def analyze_event(event: AutomationEvent) -> JSONResponse:
        return await respond("analyze event", lambda: proposals.analyze_event(event))

    @router.post("/automation/propose")
    async def generate_proposal(context: AutomationContext) -> JSONResponse:
        return await respond(
            "generate proposal", lambda: proposals.generate_proposal(context)
        )

    @router.post("/automation/validate")
    async def validate_proposal(suggestion: AutomationSuggestion) -> JSONResponse:
        return await respond(
            "validate proposal", lambda: proposals.validate_proposal(suggestion)
        )

    # Scene learning
    @router.post("/scenes/record")
    async def record_operation(operation: OperationRecord) -> JSONResponse:
        async def call():
            learning.record_operation(operation)
            return {"recorded": True}

        return await respond("record operation", call)

    @router.get("/scenes/patterns")
    async def get_patterns() -> JSONResponse:
        async def call():
            return learning.get_operation_patterns()

        return await respond("get operation patterns", call)

    @router.get("/scenes/sequential-patterns")
    async def get_sequential_patterns() -> JSONResponse:
        async def call():
            return learning.detect_patterns()

        return await respond("get sequential patterns", call)

    @router.get("/scenes/time-patterns")
    async def get_time_patterns() -> JSONResponse:
        async def call():
            return learning.detect_time_based_patterns()

        return await respond("get time patterns", call)

    @router.get("/scenes/candidates")
    async def get_candidates() -> JSONResponse:
        async def call():
            return learning.generate_scene_candidates()

        return await respond("get scene candidates", call)

    @router.post("/scenes/create")
    async def create_scene(candidate: SceneCandidate) -> JSONResponse:
        return await respond(
            "create scene", lambda: learning.create_scene_from_candidate(candidate)
        )

    @router.post("/scenes/suggestions")
    async def get_suggestions(context: SceneLearningContext) -> JSONResponse:
        async def call():
            return learning.get_scene_suggestions(context)

        return await respond("get scene suggestions", call)

    @router.get("/scenes/learned")
    async def get_learned_scenes() -> JSONResponse:
        async def call():
            return learning.get_learned_scenes()

        return await respond("get learned scenes", call)

    @router.post("/scenes/learned/{scene_id}/apply")
    async def apply_learned_scene(scene_id: str) -> JSONResponse:
        return await respond(
            "apply learned scene", lambda: learning.apply_learned_scene(scene_id)
        )

    # Device passthrough
    @router.get("/switchbot/devices")
    async def get_devices() -> JSONResponse:
        return await respond("get devices", switchbot.get_devices)

    @router.get("/switchbot/devices/{device_id}/status")
    async def get_device_status(device_id: str) -> JSONResponse:
        return await respond(
            "get device status", lambda: switchbot.get_device_status(device_id)
        )

    @router.get("/switchbot/scenes")
    async def get_scenes() -> JSONResponse:
        return await respond("get scenes", switchbot.get_scenes)

    @router.post("/switchbot/scenes/{scene_id}/execute")
    async def execute_scene(scene_id: str) -> JSONResponse:
        return await respond("execute scene", lambda: switchbot.execute_scene(scene_id))

    return router


async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return fail(f"Invalid request: {problems}", 400)


def create_web_app(
    rule_logic: RuleLogic,
    parser: WorkflowParser,
    evaluator: ConditionEvaluator,
    proposals: ProposalEngine,
    learning: SceneLearningEngine,
    switchbot: SwitchBotClient,
) -> FastAPI:
    app = FastAPI(title="SwitchBot Automation Gateway")
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(
        create_router(rule_logic, parser, evaluator, proposals, learning, switchbot)
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        return ok({"status": "ok"})

    return app
