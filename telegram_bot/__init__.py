"""
Telegram Bot Module

Transport adapter between Telegram updates and the task lifecycle engine.
Commands open wizards, button presses and text messages become wizard
actions, and approval buttons are routed to the approval decisions.

Note: Directory named telegram_bot to avoid conflict with the telegram
package installed by python-telegram-bot.
"""
