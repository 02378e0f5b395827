"""
Test Suite for Taskflow

This package contains the tests for:
- taskflow/ - parser, router, store, wizards, reminders, notifications, API
- telegram_bot/ - callback routing and rendering
"""
