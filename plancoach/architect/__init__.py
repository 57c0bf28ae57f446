from .dispatcher import ToolDispatcher
from .machine import FlowContext, FlowResult, TERMINAL_STATUSES
from .tools import ARCHITECT_TOOLS, parse_tool_call
