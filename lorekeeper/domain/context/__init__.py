 # This module handles context assembly for a conversation turn

# +---------------------+
# |      Knowledge      |   (Persistent, owned by the user)
# |---------------------|
# | Lore entries        |
# | Memories            |
# +---------------------+

# +---------------------+
# |      State          |   (Per conversation, per entry)
# |---------------------|
# | Turn counter        |
# | Sticky / cooldown   |
# | Pending delays      |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (Assembled every turn)
# |------------------------------|
# | Matched entries, ranked      |
# | Admitted within the budget   |
# | Grouped into positioned      |
# |   blocks                     |
# +------------------------------+
#         |
#         v
#   [prompt assembly / LLM call]
