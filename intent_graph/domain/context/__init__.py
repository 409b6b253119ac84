# Conversation context for one orchestration pass

# +---------------------+
# |   Session store     |   (Across passes, per tenant)
# |---------------------|
# | Ordered messages    |
# | Sliding window      |
# | Sub-sessions        |
# +---------------------+
#          |
#          v  trailing history / current turn
# +------------------------------+
# |     Orchestration state      |   (One pass only)
# |------------------------------|
# | Input + detected language    |
# | Intents, handler results     |
# | Final response or error      |
# +------------------------------+
