# This module handles Context engineering

# +---------------------+      +---------------------+
# |   Vision record     |      |   Runtime memory    |
# |---------------------|      |---------------------|
# | Critical facts      |      | Recent turns        |
# +---------------------+      +---------------------+
#
# +---------------------+      +---------------------+
# |   User memory       |      |   Retrieved (RAG)   |
# |---------------------|      |---------------------|
# | Long-term facts/TTL |      | Pre-ranked snippets |
# +---------------------+      +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |      Context optimizer       |   (Fits the token budget)
# |------------------------------|
# | drop empty layers            |
# | prioritize critical          |
# | compress rag / recent        |
# | deduplicate                  |
# | proportional truncation      |
# +------------------------------+
#         |
#         v
#   [LLM prompt context]
