"""
Concept Generation Prompts

All prompts used by the OpenAI generation provider, kept in one place.
"""

SYSTEM_PROMPT = """
You extend concept graphs. You answer with a single JSON object and nothing else.
"""

CONCEPTS_PROMPT = """
A knowledge graph currently contains these concepts:
{existing_concepts}

Propose up to {count} NEW concepts that are closely related to "{parent_name}".
Expansion strategy: {strategy}

RULES:
- Do not repeat any concept listed above (case-insensitive)
- Prefer short names (1-4 words)
- confidence is your certainty (0.0-1.0) that the concept relates to "{parent_name}"

Respond in this JSON format:
{{
  "concepts": [
    {{"name": "Concept name", "confidence": 0.9, "statement": "One sentence relating it to {parent_name}"}}
  ]
}}
"""

CONNECTIONS_PROMPT = """
These concepts were just added to a knowledge graph (id: name):
{new_concepts}

Other concepts already in the graph (id: name):
{existing_concepts}

Suggest up to {count} meaningful connections. Each connection links two ids from
the lists above; at least one end must be a newly added concept.

Respond in this JSON format:
{{
  "connections": [
    {{"source": "id", "target": "id", "weight": 0.7, "statement": "Why they relate"}}
  ]
}}
"""

INSIGHTS_PROMPT = """
A knowledge graph grew by these concepts at depth {depth}:
{new_concepts}

Name at most 3 observations about the new structure, e.g. clusters that formed
or gaps between topics worth exploring next.

Respond in this JSON format:
{{
  "insights": [
    {{"type": "cluster", "description": "...", "concepts": ["name", "name"]}}
  ]
}}
"""
