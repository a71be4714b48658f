from app.records.models import Company, Contact, Deal, EmailLog, EmailTemplate, Lead, Task, User

__all__ = [
    "Company",
    "Contact",
    "Deal",
    "EmailLog",
    "EmailTemplate",
    "Lead",
    "Task",
    "User",
]
