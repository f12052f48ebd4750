"""Feedback writer: records traces and learns contracts and recipes from them."""

from owlmend.feedback.writer import FeedbackStats, FeedbackWriter, infer_renames

__all__ = ["FeedbackStats", "FeedbackWriter", "infer_renames"]
