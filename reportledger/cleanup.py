from collections.abc import Sequence

from reportledger.remote import Channel
from reportledger.run_log import RunLog
from reportledger.schemas import ToolConfig


def delete_outputs(
    channel: Channel,
    tools: Sequence[ToolConfig],
    *,
    generated_dir: str,
    namespace: str,
    log: RunLog,
) -> None:
    # The namespace directory goes too once no tool keeps its files.
    namespace_dir = f"{generated_dir}/{namespace}"
    keep_namespace_dir = False
    for tool in tools:
        if tool.delete_output_files:
            channel.call("delete_tree", {"path": f"{namespace_dir}/{tool.format}"}, log)
        else:
            keep_namespace_dir = True

    if not keep_namespace_dir:
        channel.call("delete_tree", {"path": namespace_dir}, log)
