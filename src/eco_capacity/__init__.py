"""Visitor-capacity admission engine for ecologically sensitive destinations."""
