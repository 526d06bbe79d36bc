from typing import Iterable, List, Sequence, Union

from session_orchestrator.domain.models.chat_state import (
    TextBlock, SegmentBlock, ResponseBlock, ResponseFragment,
    ResponseSegment, FunctionCallRecord
)


def fold(blocks: Sequence[ResponseBlock], fragment: ResponseFragment) -> List[ResponseBlock]:
    """Squash one streamed fragment into an ordered list of display blocks.

    Adjacent text merges into one block. A segment merges into the previous
    block only while that block is the same segment kind and still open (no
    end time). Empty text never opens a new block. The input list is left
    untouched.
    """

    result = list(blocks)
    last = result[-1] if result else None

    if last is None or last.type != fragment.type:
        if not (isinstance(fragment, TextBlock) and fragment.text == ""):
            result.append(fragment.model_copy())
        return result

    if isinstance(last, TextBlock) and isinstance(fragment, TextBlock):
        result[-1] = last.model_copy(update={"text": last.text + fragment.text})
        return result

    if (
        isinstance(last, SegmentBlock)
        and isinstance(fragment, SegmentBlock)
        and last.segment_type == fragment.segment_type
        and last.end_time is None
    ):
        result[-1] = last.model_copy(update={
            "text": last.text + fragment.text,
            "end_time": fragment.end_time
        })
        return result

    result.append(fragment.model_copy())
    return result


def fold_all(fragments: Iterable[ResponseFragment], blocks: Sequence[ResponseBlock] = ()) -> List[ResponseBlock]:
    result = list(blocks)
    for fragment in fragments:
        result = fold(result, fragment)
    return result


def response_to_fragments(
    response: Iterable[Union[str, ResponseSegment, FunctionCallRecord]]
) -> List[ResponseFragment]:
    """Convert a stored model response into display fragments, skipping tool calls"""

    fragments: List[ResponseFragment] = []
    for item in response:
        if isinstance(item, str):
            fragments.append(TextBlock(text=item))
        elif isinstance(item, ResponseSegment):
            fragments.append(SegmentBlock(
                segment_type=item.segment_type,
                text=item.text,
                start_time=item.start_time,
                end_time=item.end_time
            ))
    return fragments


def blocks_to_response(blocks: Iterable[ResponseBlock]) -> List[Union[str, ResponseSegment]]:
    """Convert folded display blocks back into canonical response items"""

    response: List[Union[str, ResponseSegment]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            response.append(block.text)
        else:
            response.append(ResponseSegment(
                segment_type=block.segment_type,
                text=block.text,
                ended=block.end_time is not None,
                start_time=block.start_time,
                end_time=block.end_time
            ))
    return response


class StreamReconciler:
    """Holds the in-flight blocks of the generation currently running"""

    def __init__(self):
        self._blocks: List[ResponseBlock] = []

    @property
    def blocks(self) -> List[ResponseBlock]:
        return list(self._blocks)

    def push(self, fragment: ResponseFragment) -> List[ResponseBlock]:
        self._blocks = fold(self._blocks, fragment)
        return self.blocks

    def reset(self):
        self._blocks = []
