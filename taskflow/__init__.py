"""
Taskflow Module

Task lifecycle engine for the team task-management Telegram bot.
Handles conversational task creation and completion, approval routing,
persistence, overdue detection and reminders.

Components:
- date_parser: free-text day/month/time parsing with AM/PM clarification
- approval_router: initial status decision, approver chain, completion bypass
- task_store: relational persistence for tasks, reminders and CC lists
- directory: user/role/project lookups and per-interaction actor resolution
- creation_flow / completion_flow: the conversational wizards
- approval_flow: creation and completion approve/reject decisions
- reminders: overdue sweep and reminder delivery
- notifications: best-effort message delivery to users
- api: read-only REST slice backing the web mini-app
"""

__version__ = "1.4.0"
