from codeevents.models.reminder import Reminder

__all__ = ["Reminder"]
