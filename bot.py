#!/usr/bin/env python3
"""
Trackmania Records Bot - Entry Point

Telegram bot that tracks campaign and weekly shorts records for group members.
The actual implementation is in the tmtracker package.
"""

if __name__ == "__main__":
    from tmtracker import main
    main()
