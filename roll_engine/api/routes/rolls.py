"""
Roll API Routes.

Endpoints for dice notation and the roll engine:
- Parse and validate notation
- Pre-roll analysis and roll execution
- Attack-then-damage rolls
- Roll history and stats
- Modifier registration
"""
import logging
from dataclasses import replace
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from roll_engine.api.dependencies import get_engine, get_roll_session
from roll_engine.api.schemas import (
    AttackRequest,
    ExpressionRequest,
    ModifierListRequest,
    RollRequest,
)
from roll_engine.core.dice_parser import (
    parse_any_dice_expression,
    try_parse_any_dice_expression,
    validate_operations,
)
from roll_engine.core.errors import OperationValidationError
from roll_engine.core.models import DiceExpression, LabeledDiceExpression
from roll_engine.core.roll_engine import RollEngine
from roll_engine.core.roll_session import RollSession
from roll_engine.core.statistics import estimate_average, estimate_range

logger = logging.getLogger("roll_engine.api")

router = APIRouter()


def _expression_to_dict(labeled: LabeledDiceExpression) -> Dict[str, Any]:
    expression: DiceExpression = labeled.expression
    low, high = estimate_range(expression)
    return {
        "label": labeled.label,
        "notation": expression.to_notation(),
        "count": expression.count,
        "sides": expression.sides,
        "modifier": expression.modifier,
        "operations": [
            {"type": op.type.value, "value": list(op.value) if isinstance(op.value, tuple) else op.value}
            for op in expression.operations
        ],
        "min": low,
        "max": high,
        "average": round(estimate_average(expression), 2),
    }


def _definition_from_request(request: RollRequest, session: RollSession):
    definition = session.create_roll_definition(
        request.type,
        request.context.to_model(),
        request.expression,
        name=request.name,
        critical_hit=request.critical_hit,
    )
    if request.modifiers:
        definition = replace(definition, modifiers=tuple(m.to_model() for m in request.modifiers))
    return definition


# =============================================================================
# Notation
# =============================================================================

@router.post("/parse")
async def parse_expression(request: ExpressionRequest):
    """
    Parse dice notation.

    Malformed notation returns a 400 with the offending text.
    """
    multi = parse_any_dice_expression(request.expression)
    return {
        "expression": multi.full_expression,
        "notation": multi.to_notation(),
        "expressions": [_expression_to_dict(e) for e in multi.expressions],
    }


@router.post("/validate")
async def validate_expression(request: ExpressionRequest):
    """Check notation and operation legality without raising."""
    parsed = try_parse_any_dice_expression(request.expression)
    if not parsed.valid:
        return {"valid": False, "error": parsed.error, "errors": []}

    errors = []
    for labeled in parsed.multi_expression.expressions:
        expression = labeled.expression
        errors.extend(validate_operations(expression.operations, expression.count, expression.sides))

    return {
        "valid": not errors,
        "error": None,
        "errors": errors,
    }


# =============================================================================
# Rolling
# =============================================================================

@router.post("/analyze")
async def analyze_roll(
    request: RollRequest,
    session: RollSession = Depends(get_roll_session),
):
    """Pre-roll preview: dice, modifiers, conditions and estimated range."""
    definition = _definition_from_request(request, session)
    info = await session.analyze(definition)
    return info.to_dict()


@router.post("/execute")
async def execute_roll(
    request: RollRequest,
    session: RollSession = Depends(get_roll_session),
):
    """Roll and record the result in the session history."""
    definition = _definition_from_request(request, session)

    # Reject illegal operations up front with the full error list
    for labeled in definition.base_expression.expressions:
        expression = labeled.expression
        errors = validate_operations(expression.operations, expression.count, expression.sides)
        if errors:
            raise OperationValidationError(str(expression), errors)

    result = await session.roll(definition)
    logger.info(f"Executed {definition.name}: {definition.base_expression.full_expression} = {result.total}")
    return result.to_dict()


@router.post("/attack")
async def attack_then_damage(
    request: AttackRequest,
    session: RollSession = Depends(get_roll_session),
):
    """Roll an attack, then its damage (critical damage on a critical hit)."""
    context = request.context.to_model()
    damage_expression = (
        request.damage_expression
        or context.source.properties.get("damage")
        or "1d6"
    )
    attack, damage = await session.roll_attack_then_damage(context, request.attack_expression, damage_expression)
    return {
        "attack": attack.to_dict(),
        "damage": damage.to_dict(),
        "critical_hit": attack.critical_success,
        "hit": attack.success,
    }


# =============================================================================
# History
# =============================================================================

@router.get("/history")
async def get_history(
    limit: int = Query(20, ge=1, le=1000),
    session: RollSession = Depends(get_roll_session),
):
    """Recent rolls, newest first."""
    history = session.history[:limit]
    return {"rolls": [r.to_dict() for r in history], "count": len(history)}


@router.delete("/history")
async def clear_history(session: RollSession = Depends(get_roll_session)):
    session.clear_history()
    return {"success": True}


@router.get("/stats")
async def get_stats(session: RollSession = Depends(get_roll_session)):
    return session.stats()


# =============================================================================
# Modifiers
# =============================================================================

@router.post("/modifiers/character/{character_id}")
async def register_character_modifiers(
    character_id: str,
    request: ModifierListRequest,
    engine: RollEngine = Depends(get_engine),
):
    """Replace the modifiers registered for a character."""
    modifiers = [m.to_model() for m in request.modifiers]
    engine.register_character_modifiers(character_id, modifiers)
    return {"character_id": character_id, "registered": [m.id for m in modifiers]}


@router.post("/modifiers/item/{item_id}")
async def register_item_modifiers(
    item_id: str,
    request: ModifierListRequest,
    engine: RollEngine = Depends(get_engine),
):
    """Replace the modifiers registered for an item."""
    modifiers = [m.to_model() for m in request.modifiers]
    engine.register_item_modifiers(item_id, modifiers)
    return {"item_id": item_id, "registered": [m.id for m in modifiers]}


@router.post("/modifiers/temporary")
async def add_temporary_modifiers(
    request: ModifierListRequest,
    engine: RollEngine = Depends(get_engine),
):
    """Add short-lived modifiers such as spell effects."""
    modifiers = [m.to_model() for m in request.modifiers]
    engine.add_temporary_modifiers(modifiers)
    return {"added": [m.id for m in modifiers], "temporary": [m.id for m in engine.registry.temporary]}


@router.delete("/modifiers/temporary")
async def clear_temporary_modifiers(engine: RollEngine = Depends(get_engine)):
    """End-of-turn cleanup of temporary modifiers."""
    engine.clear_temporary_modifiers()
    return {"success": True}
