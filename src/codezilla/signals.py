"""Transcript signal definitions.

Every classifier rule has a stable key. The key maps to the signal group,
semantic phase and confidence used by the reducer, plus the matched line
shape and a short description for manual debugging.
"""

from dataclasses import dataclass

from .models import SemanticPhase, SemanticSignalGroup, SignalConfidence


@dataclass(frozen=True)
class SignalDefinition:
    key: str
    group: SemanticSignalGroup
    phase: SemanticPhase
    confidence: SignalConfidence
    pattern: str
    description: str


_G = SemanticSignalGroup
_P = SemanticPhase
_C = SignalConfidence


_DEFINITIONS = [
    # ── Claude Code ──────────────────────────────────────────────────────────
    SignalDefinition(
        "claude.turn.dequeue", _G.TURN, _P.THINKING, _C.HIGH,
        '{"type":"queue-operation","operation":"dequeue"}',
        "Queued prompt handed to the model",
    ),
    SignalDefinition(
        "claude.turn.user_message", _G.TURN, _P.THINKING, _C.HIGH,
        '{"type":"user"} without tool_result blocks',
        "User prompt starts a turn",
    ),
    SignalDefinition(
        "claude.user.tool_result", _G.TOOLING, _P.TOOLING, _C.HIGH,
        'user content block {"type":"tool_result","tool_use_id":...}',
        "Tool finished and returned its output",
    ),
    SignalDefinition(
        "claude.lifecycle.compaction", _G.LIFECYCLE, _P.THINKING, _C.HIGH,
        '{"type":"CompactBoundaryMessage","newTranscriptPath":...}',
        "Conversation compacted into a new transcript file",
    ),
    SignalDefinition(
        "claude.lifecycle.result", _G.LIFECYCLE, _P.WAITING, _C.HIGH,
        '{"type":"result","cost_usd":...}',
        "Turn finished with final cost",
    ),
    SignalDefinition(
        "claude.lifecycle.system_error", _G.LIFECYCLE, _P.WAITING, _C.HIGH,
        '{"type":"system","error"|"warning":...}',
        "System reported an error or warning",
    ),
    SignalDefinition(
        "claude.lifecycle.api_error", _G.LIFECYCLE, _P.WAITING, _C.HIGH,
        '{"type":"api_error"} or {"error":{...}}',
        "Model API request failed",
    ),
    SignalDefinition(
        "claude.lifecycle.summary", _G.LIFECYCLE, _P.THINKING, _C.MEDIUM,
        '{"type":"summary","newTranscriptPath":...}',
        "Summary compaction (newer format)",
    ),
    SignalDefinition(
        "claude.assistant.thinking_block", _G.THINKING, _P.THINKING, _C.HIGH,
        'assistant content block {"type":"thinking","thinking":...}',
        "Extended thinking block",
    ),
    SignalDefinition(
        "claude.assistant.redacted_thinking", _G.THINKING, _P.THINKING, _C.MEDIUM,
        'assistant content block {"type":"redacted_thinking"}',
        "Safety-redacted thinking block",
    ),
    SignalDefinition(
        "claude.assistant.server_tool_use", _G.TOOLING, _P.TOOLING, _C.HIGH,
        'assistant content block {"type":"server_tool_use","id":...}',
        "Remote (server-side) tool call",
    ),
    SignalDefinition(
        "claude.assistant.tool_use", _G.TOOLING, _P.TOOLING, _C.HIGH,
        'assistant content block {"type":"tool_use","id":...,"name":...}',
        "Tool call requested",
    ),
    SignalDefinition(
        "claude.assistant.text", _G.RESPONSE, _P.RESPONDING, _C.HIGH,
        'assistant content block {"type":"text","text":"..."}',
        "Visible assistant response text",
    ),
    # ── Codex ────────────────────────────────────────────────────────────────
    SignalDefinition(
        "codex.turn.started", _G.TURN, _P.THINKING, _C.HIGH,
        '{"type":"turn.started"}',
        "Turn started",
    ),
    SignalDefinition(
        "codex.response.reasoning", _G.THINKING, _P.THINKING, _C.HIGH,
        'response_item payload {"type":"reasoning"}',
        "Model reasoning item",
    ),
    SignalDefinition(
        "codex.response.function_call", _G.TOOLING, _P.TOOLING, _C.HIGH,
        'response_item payload {"type":"function_call","call_id":...}',
        "Command or tool call requested",
    ),
    SignalDefinition(
        "codex.response.function_call_output", _G.TOOLING, _P.TOOLING, _C.HIGH,
        'response_item payload {"type":"function_call_output","call_id":...}',
        "Command or tool call finished",
    ),
    SignalDefinition(
        "codex.response.assistant_message", _G.RESPONSE, _P.RESPONDING, _C.MEDIUM,
        'response_item payload {"type":"message","role":"assistant"}',
        "Assistant message item",
    ),
    SignalDefinition(
        "codex.response.web_search", _G.TOOLING, _P.TOOLING, _C.MEDIUM,
        'response_item payload {"type":"web_search_call"}',
        "Web search call",
    ),
    SignalDefinition(
        "codex.response.file_search", _G.TOOLING, _P.TOOLING, _C.MEDIUM,
        'response_item payload {"type":"file_search_call"}',
        "File search call",
    ),
    SignalDefinition(
        "codex.event.agent_message", _G.RESPONSE, _P.RESPONDING, _C.MEDIUM,
        'event_msg payload {"type":"agent_message","message":...}',
        "Agent message event",
    ),
    SignalDefinition(
        "codex.event.user_input_request", _G.LIFECYCLE, _P.WAITING, _C.HIGH,
        'event_msg payload {"type":"request_user_input"|"elicitation_request"}',
        "Agent asked the user for input",
    ),
    SignalDefinition(
        "codex.lifecycle.turn_failed", _G.LIFECYCLE, _P.WAITING, _C.HIGH,
        '{"type":"turn.failed","error":...}',
        "Turn failed",
    ),
    SignalDefinition(
        "codex.lifecycle.context_compacted", _G.LIFECYCLE, _P.THINKING, _C.HIGH,
        '{"type":"context.compacted"}',
        "Context window compacted",
    ),
    SignalDefinition(
        "codex.legacy.item_started", _G.TOOLING, _P.TOOLING, _C.LOW,
        '{"type":"item.started","item":{"type":"command_execution"|"function_call"}}',
        "Legacy schema command start",
    ),
    SignalDefinition(
        "codex.legacy.item_completed", _G.TOOLING, _P.TOOLING, _C.LOW,
        '{"type":"item.completed","item":{"id":...}}',
        "Legacy schema item completion",
    ),
    SignalDefinition(
        "codex.turn.completed", _G.TURN, _P.WAITING, _C.HIGH,
        '{"type":"turn.completed","usage":{...}}',
        "Turn completed",
    ),
]

SIGNAL_DEFINITIONS: dict[str, SignalDefinition] = {d.key: d for d in _DEFINITIONS}

# Keys whose signal means the conversation is being compacted.
COMPACTION_SIGNAL_KEYS = frozenset({
    "claude.lifecycle.compaction",
    "claude.lifecycle.summary",
    "codex.lifecycle.context_compacted",
})


def get_signal_definition(key: str | None) -> SignalDefinition | None:
    """Look up a signal definition by key."""
    if key is None:
        return None
    return SIGNAL_DEFINITIONS.get(key)
