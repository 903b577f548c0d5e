# State = what an entry's activation looked like at the end of the last turn of a conversation.

# It is counted in turns, not messages or wall-clock time, and includes:

# Phase (idle, pending, active, cooling)

# The turn an entry last matched, was activated, or started cooling down

# The score of the match that activated it, reused while sticky holds it

# State only exists while an entry is doing something; idle entries carry none.
