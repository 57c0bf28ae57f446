from .agent import CheckupAgent, CheckupTurn, interpret_reply
from .scanner import get_pending_items, is_stale
from .streaks import completed_streak, missed_streak, summarize_day
