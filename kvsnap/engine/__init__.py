# Snapshot-and-resume generation engine
#
# This package captures the mutable state of a token-generation engine,
# persists it, restores it into a fresh engine and proves that generation
# continues exactly where it left off.
#
# Key components:
#   - adapters/          Engine handle contract + reference torch engine
#   - registry.py        Maps engine family names to engine classes
#   - types.py           Engine and sampling configuration
#   - errors.py          Phase-tagged failures (tokenize/evaluate/size/io)
#   - state_codec.py     Capture/restore/persist/load of engine state blobs
#   - history.py         Token history window carried next to the state
#   - sampling.py        Candidate construction + next-token selection
#   - harness.py         Checkpoint -> destroy -> recreate -> resume protocol
#   - checkpoint_store.py  Named on-disk checkpoints with compat fingerprints
