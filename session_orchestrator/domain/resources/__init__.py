# This module owns the lifecycle of the inference resources
#
#  llama  ->  model  ->  context  ->  contextSequence  ->  chatSession
#
# Each resource can only exist while its predecessor is loaded.
# Locks are always taken left to right; teardown runs right to left.
