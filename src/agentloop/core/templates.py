"""
Default prompt templates.

Placeholders use the ``${parameters.<key>}`` syntax understood by :mod:`agentloop.agent.prompt`.
Every template can be overridden per agent through its parameters.
"""

PROMPT_TEMPLATE_PREFIX = """\
Assistant is a large language model that can THINK and ACT.

Assistant answers a wide range of questions. When it lacks the facts needed for an answer it \
uses the tools it has been given, one at a time, and reasons over what each tool returns before \
deciding on the next step."""

PROMPT_TEMPLATE_SUFFIX = """\
Human:Never answer from memory when a tool can look the facts up. Keep the final answer \
concise and grounded in the tool outputs above."""

PROMPT_FORMAT_INSTRUCTION = """\
RESPONSE FORMAT INSTRUCTIONS
----------------------------
Output a JSON markdown code snippet containing a valid JSON object in one of two formats:

**Option 1:**
Use this if you want to use a tool.
```json
{
    "thought": "Think about what to do next",
    "action": "The action to take, must be one of these tool names: [${parameters.tool_names}]",
    "action_input": "The input to the tool"
}
```

**Option 2:**
Use this if you can answer the question without any more tools.
```json
{
    "thought": "Now I know the final answer",
    "final_answer": "The final answer to the original input question"
}
```"""

PROMPT_TEMPLATE_TOOL_RESPONSE = """\
Assistant's thought and action:
${parameters.llm_tool_selection_response}

TOOL RESPONSE of ${parameters.tool_name}:
---------------------
Tool input:
${parameters.tool_input}

Tool output:
${parameters.observation}

Human:Reply with the next step. Remember to respond with a JSON markdown snippet using one of \
the two formats described above."""

CHAT_HISTORY_PREFIX = (
    "Below is Chat History between Human and AI which sorted by time with asc order:\n"
)

PROMPT_TEMPLATE = """\
${parameters.prompt.prefix}

Human:TOOLS
------
${parameters.tool_descriptions}

${parameters.prompt.format_instruction}

${parameters.indices}

${parameters.examples}

${parameters.chat_history}

${parameters.context}

Human:USER'S INPUT
--------------------
Here is the user's input :
${parameters.question}

${parameters.prompt.suffix}

${parameters.scratchpad}"""

MAX_ITERATIONS_MESSAGE = (
    "Agent reached maximum iterations ({max_iterations}) without completing the task"
)

# Stop sequences sent to text-completion models so they hand control back before
# hallucinating a tool observation.
DEFAULT_STOP = ["\nObservation:", "\n\tObservation:"]
DEFAULT_STOP_SEQUENCES = [
    "\n\nHuman:",
    "\nObservation:",
    "\n\tObservation:",
    "\nObservation",
    "\n\tObservation",
    "\n\nQuestion",
]
