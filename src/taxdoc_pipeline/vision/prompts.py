"""Prompt templates for vision-based tax document extraction.

Prompts are versioned so stored results can be traced to the prompt that
produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..schemas.extraction import FIELD_KINDS

# v1.1: Per-field confidence and template hints for hybrid runs
PROMPT_VERSION = "v1.1"


@dataclass
class ExtractionPrompt:
    """Prompt template for field extraction from a tax document.

    Attributes:
        version: Prompt version recorded on each result.
        system_prompt: System message setting model behavior.
        user_template: Template for the user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a tax document extraction assistant.
You read invoices, receipts and tax reports and return the tax-relevant figures.

Rules:
1. Only report values that are printed on the document
2. Amounts use a dot as decimal separator and no currency symbol
3. Dates use ISO format (YYYY-MM-DD)
4. vat_rate is a percentage number (23 for 23%)
5. Give each field a confidence from 0.0 to 1.0
6. Omit fields you cannot find

Respond in JSON format:
{
    "fields": {
        "total_amount": {"value": "123.00", "confidence": 0.9},
        "vat_amount": {"value": "23.00", "confidence": 0.9},
        "invoice_date": {"value": "2024-01-31", "confidence": 0.8}
    },
    "text": "Transcribed document text"
}"""

    user_template: str = """Extract the tax fields from this {category} document.

Document:
- File name: {filename}
- Type: {mime_type}

Fields to extract:
{field_list}
{hints}{text_section}
Provide your answer in JSON format."""

    def format_user_message(
        self,
        filename: str,
        mime_type: str,
        category: str = "PURCHASE",
        text: str | None = None,
        hints: dict[str, str] | None = None,
    ) -> str:
        """Format the user message with document details.

        Args:
            filename: Original file name.
            mime_type: Document MIME type.
            category: SALES or PURCHASE.
            text: Locally derived text, if any (embedded in the prompt).
            hints: Values a learned template expects, keyed by field name.

        Returns:
            Formatted user message.
        """
        field_list = "\n".join(f"- {name} ({kind.value})" for name, kind in FIELD_KINDS.items())

        hints_section = ""
        if hints:
            hint_lines = "\n".join(f"- {name}: {value}" for name, value in sorted(hints.items()))
            hints_section = (
                "\nA previous document from this issuer had these values. "
                "Verify them rather than copying them:\n" + hint_lines + "\n"
            )

        text_section = ""
        if text:
            # Keep the prompt within a sane context size
            text_section = f"\nDocument text:\n{text[:8000]}\n"

        return self.user_template.format(
            category=category.lower(),
            filename=filename,
            mime_type=mime_type,
            field_list=field_list,
            hints=hints_section,
            text_section=text_section,
        )
