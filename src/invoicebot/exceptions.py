"""
Custom exception classes for the invoice bot.

This module defines domain-specific exceptions for better error handling
and reporting across the application.
"""


class FlowInputError(Exception):
    """
    Raised when a chat message cannot be accepted in the current state.

    The message is user-facing and is sent back as the reply.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidInvoiceNumber(Exception):
    """
    Exception raised when an invoice number does not contain YYYY-NNNNN.

    Attributes:
        invoice_number: The offending invoice number
        message: Explanation of the error
    """

    def __init__(
        self, invoice_number: str, message: str = "Invalid invoice number format"
    ) -> None:
        self.invoice_number = invoice_number
        self.message = f"{message}: {invoice_number}"
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return (
            f"InvalidInvoiceNumber(invoice_number={self.invoice_number}, "
            f"message={self.message})"
        )


class MessagingError(Exception):
    """
    Exception raised when the Graph API rejects an outbound message.

    Attributes:
        operation: The gateway operation that failed (e.g. "send text")
        status_code: HTTP status returned by the API, if any
        message: Explanation of the error
    """

    def __init__(
        self, operation: str, status_code: int | None = None, detail: str = ""
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        self.message = f"Meta API {operation} failed: {status_code} {detail}".strip()
        super().__init__(self.message)


class MessagingConfigurationError(MessagingError):
    """Raised when a channel is used without its access token configured."""

    def __init__(self, setting_name: str) -> None:
        self.setting_name = setting_name
        super().__init__("configuration", None, f"{setting_name} is not configured")


class SignatureVerificationError(Exception):
    """Raised when the x-hub-signature-256 header is missing or wrong."""


class OrganizationNotFound(Exception):
    """
    Exception raised when no organization owns a webhook routing identifier.

    Attributes:
        phone_number_id: WhatsApp phone-number id from the change metadata
        business_account_id: Entry id (business account or page)
    """

    def __init__(
        self, phone_number_id: str | None, business_account_id: str | None
    ) -> None:
        self.phone_number_id = phone_number_id
        self.business_account_id = business_account_id
        self.message = (
            "Organization not found for "
            f"phone_number_id={phone_number_id} business_account_id={business_account_id}"
        )
        super().__init__(self.message)
