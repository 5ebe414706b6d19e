# This module handles Context engineering

# +---------------------+
# |      Memory         |   (Persistent, small, JSON lines on disk)
# |---------------------|
# | Preferences         |
# | Decisions           |
# | Durable context     |
# +---------------------+
#         |
#         v  rendered into the system prompt
# +------------------------------+
# |        ContextWindow         |   (One run, token-budgeted)
# |------------------------------|
# | Anchor (original prompt)     |
# | Compaction summary           |
# | Assistant + tool-call units  |
# | Nudges / observations        |
# +------------------------------+
#         ^
#         |  ToolResultLimiter shrinks results before admission
#   [LLM / tool call]
