"""
Pipeline class for wuerfel.

The Pipeline runs a sequence of nodes on one camera's frame.
"""

import logging
import time
from typing import Any, List, Optional

from ..core.node import Node
from ..utils.rerun_logger import RerunLogger

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Pipeline for orchestrating the execution of processing nodes.

    The pipeline manages the flow of data between nodes and optionally logs
    intermediate frames to Rerun.
    """

    def __init__(self, name: str = "Pipeline", rerun_logger: Optional[RerunLogger] = None):
        """
        Initialize the pipeline.

        Args:
            name: Name of the pipeline
            rerun_logger: Logger for intermediate frames, usually shared with other
                pipelines. Without one, nothing is logged to Rerun.
        """
        self.name = name
        self.nodes: List[Node] = []
        self.rerun_logger = rerun_logger

    def add_node(self, node: Node) -> "Pipeline":
        """
        Add a node to the pipeline.

        Args:
            node: Node to add to the pipeline

        Returns:
            Self for method chaining
        """
        if not isinstance(node, Node):
            raise TypeError(f"Expected Node instance, got {type(node)}")

        self.nodes.append(node)
        logger.debug(f"Added node {node.name} to pipeline {self.name}")
        return self

    def process(self, input_data: Any) -> Any:
        """
        Process input data through all nodes in sequence.

        Args:
            input_data: Input data for the first node

        Returns:
            Output data from the last node
        """
        if not self.nodes:
            raise ValueError("Pipeline has no nodes")

        start_time = time.time()
        current_data = input_data

        logger.info(f"Starting pipeline {self.name} with {len(self.nodes)} nodes")

        for i, node in enumerate(self.nodes):
            logger.debug(f"Processing node {i + 1}/{len(self.nodes)}: {node.name}")
            current_data = node(current_data)

            if self.rerun_logger is not None and hasattr(current_data, "image"):
                self.rerun_logger.log_frame(current_data, f"{self.name}/{node.name}")

        total_runtime = time.time() - start_time
        logger.info(f"Pipeline {self.name} completed in {total_runtime:.3f}s")

        if hasattr(current_data, "metadata"):
            current_data.metadata = current_data.metadata or {}
            current_data.metadata[f"{self.name}_total_runtime"] = total_runtime
            current_data.metadata[f"{self.name}_node_count"] = len(self.nodes)

        return current_data

    def get_node(self, name: str) -> Optional[Node]:
        """
        Get a node by name.

        Args:
            name: Name of the node to find

        Returns:
            Node if found, None otherwise
        """
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def __len__(self) -> int:
        """Return the number of nodes in the pipeline."""
        return len(self.nodes)

    def __repr__(self) -> str:
        node_names = [node.name for node in self.nodes]
        return f"Pipeline(name='{self.name}', nodes={node_names})"
