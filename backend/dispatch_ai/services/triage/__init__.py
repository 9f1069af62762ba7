"""
Rule-based triage: urgency/category classification, price estimates and
contact-field extraction. No LLM calls happen in this package.
"""
