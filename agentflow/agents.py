"""Prompt profiles for the planner and response synthesis."""

ASSISTANT_PREAMBLE = "You are a helpful assistant. "

COMPLEXITY_PROMPT = """Analyze if this query requires multiple steps or external tools:
Query: "{query}"

Simple: Greeting, general knowledge, FAQ, opinion
Complex: Requires database lookup, calculations, multiple pieces of info, API calls

Respond with ONLY "simple" or "complex"."""

DECOMPOSE_PROMPT = """Break down this query into steps. Available tools:
{tools}

Requester user_id: {user_id}
Query: "{query}"

Respond in JSON:
{{
  "steps": [
    {{
      "reasoning": "why this step",
      "tool": "tool_name or null",
      "params": {{ "param": "value" }}
    }}
  ]
}}"""

SYNTHESIS_PROMPT = """Synthesize final answer based on executed steps.

Original Query: "{query}"

Steps: {steps}

Tool Results: {tool_results}"""

IMAGE_DEFAULT_PROMPT = "Describe what you see in this image in detail."

DIRECT_RESPONSE_FALLBACK = "I apologize, I couldn't process that request."
SYNTHESIS_FALLBACK = "I've processed your request."
