from .email import EmailAccountModel, EmailMessageModel, EmailAttachmentModel

__all__ = ["EmailAccountModel", "EmailMessageModel", "EmailAttachmentModel"]
