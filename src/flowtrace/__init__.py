from dotenv import load_dotenv
load_dotenv()

# Expose key classes for easier imports
from .models import FlowLink, FlowNode, GraphData, TraceQuery, TraceResult
from .graph_builder import build_graph
from .retrieval import RetrievalCoordinator
from .flow_http_client import FlowHTTPClient
