from dmarcfetch.mail.mailbox import (
    MailAttachment,
    MailBox,
    MailMessage,
    SearchCriteria,
    SortOrder,
)
from dmarcfetch.mail.imap import IMAPMailBox, IMAPMessage

__all__ = [
    "MailAttachment",
    "MailBox",
    "MailMessage",
    "SearchCriteria",
    "SortOrder",
    "IMAPMailBox",
    "IMAPMessage",
]
