"""
Tax document → Extraction strategy → Confidence → Learning loop

A document intelligence pipeline that turns invoices, receipts and tabular
tax reports into tax-relevant figures with confidence scores, learning
extraction templates from user corrections.
"""

__version__ = "0.1.0"
