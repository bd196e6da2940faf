# src/agents/tools.py
"""
Function-calling tool definitions for the OpenAI chat completions API.

Each stage forces its tool so the model answers with arguments matching a
fixed JSON shape instead of free text.
"""
from typing import Any, Dict

ENRICH_FEEDBACK_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "enrich_feedback",
        "description": (
            "Enrich a single customer feedback entry with structured analysis including product "
            "area linking, sentiment analysis, feature extraction, urgency assessment, and category tagging."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "The feedback entry ID"},
                "linkedProductAreas": {
                    "type": "array",
                    "description": "Product areas linked to this feedback (1-3 most relevant)",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string", "description": "Product area ID from the provided list"},
                            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        },
                        "required": ["id", "confidence"],
                    },
                },
                "sentiment": {
                    "type": "object",
                    "properties": {
                        "label": {"type": "string", "enum": ["positive", "negative", "neutral"]},
                        "score": {"type": "number", "minimum": -1, "maximum": 1},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    },
                    "required": ["label", "score", "confidence"],
                },
                "extractedFeatures": {
                    "type": "array",
                    "description": "Specific features or topics mentioned in the feedback",
                    "items": {"type": "string"},
                },
                "urgency": {
                    "type": "string",
                    "enum": ["low", "medium", "high"],
                    "description": "Urgency level based on language indicators",
                },
                "category": {
                    "type": "array",
                    "description": "Classification tags for the feedback",
                    "items": {"type": "string"},
                },
            },
            "required": ["id", "linkedProductAreas", "sentiment", "extractedFeatures", "urgency", "category"],
        },
    },
}

CLUSTER_FEEDBACK_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "cluster_feedback",
        "description": "Group enriched feedback entries into semantic clusters based on themes, topics, and user intent.",
        "parameters": {
            "type": "object",
            "properties": {
                "clusters": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string", "description": "Unique cluster identifier (e.g., cluster_1)"},
                            "theme": {"type": "string", "description": "Clear, specific theme name"},
                            "description": {
                                "type": "string",
                                "description": "What this cluster represents and why these entries belong together",
                            },
                            "entryIds": {
                                "type": "array",
                                "description": "Feedback entry IDs that belong to this cluster",
                                "items": {"type": "string"},
                            },
                        },
                        "required": ["id", "theme", "description", "entryIds"],
                    },
                }
            },
            "required": ["clusters"],
        },
    },
}

GENERATE_INSIGHT_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "generate_insight",
        "description": (
            "Generate actionable business insight from a customer feedback cluster with "
            "evidence-based analysis and prioritized recommendations."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "executiveSummary": {
                    "type": "string",
                    "description": "2-3 sentence executive summary focusing on business impact",
                },
                "detailedAnalysis": {
                    "type": "string",
                    "description": "Analysis with evidence references and root cause analysis",
                },
                "painPoint": {
                    "type": "object",
                    "properties": {
                        "description": {"type": "string"},
                        "severity": {"type": "string", "enum": ["low", "medium", "high", "critical"]},
                        "userJourneyStage": {
                            "type": "string",
                            "description": "Where in the user journey this occurs (e.g., onboarding, usage, billing)",
                        },
                        "frequencyOfMention": {"type": "number"},
                    },
                    "required": ["description", "severity", "userJourneyStage", "frequencyOfMention"],
                },
                "impact": {
                    "type": "object",
                    "properties": {
                        "usersAffected": {"type": "number"},
                        "userSegments": {"type": "array", "items": {"type": "string"}},
                        "businessImpact": {
                            "type": "object",
                            "properties": {
                                "revenue": {"type": "string", "enum": ["positive", "negative", "neutral"]},
                                "churn": {"type": "string", "enum": ["increase", "decrease", "neutral"]},
                                "satisfaction": {"type": "string", "enum": ["improve", "decline", "maintain"]},
                            },
                            "required": ["revenue", "churn", "satisfaction"],
                        },
                        "quantifiedEstimates": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "metric": {"type": "string"},
                                    "estimatedChange": {"type": "string"},
                                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                },
                                "required": ["metric", "estimatedChange", "confidence"],
                            },
                        },
                    },
                    "required": ["usersAffected", "userSegments", "businessImpact"],
                },
                "recommendations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string", "description": "Specific action title (verb + noun)"},
                            "description": {"type": "string"},
                            "category": {
                                "type": "string",
                                "enum": ["bug-fix", "enhancement", "new-feature", "process-improvement"],
                            },
                            "priority": {"type": "string", "enum": ["critical", "high", "medium", "low"]},
                            "effort": {"type": "string", "enum": ["small", "medium", "large", "extra-large"]},
                            "timeline": {"type": "string", "description": "e.g. \"1-2 weeks\", \"1 month\""},
                            "successMetrics": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["title", "description", "category", "priority", "effort", "timeline", "successMetrics"],
                    },
                },
            },
            "required": ["title", "executiveSummary", "detailedAnalysis", "painPoint", "impact", "recommendations"],
        },
    },
}


def force_tool(tool: Dict[str, Any]) -> Dict[str, Any]:
    """`tool_choice` value that makes the model call `tool`."""
    return {"type": "function", "function": {"name": tool["function"]["name"]}}
