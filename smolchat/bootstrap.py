# bootstrap.py
# Description: Builds a ready-to-use chat session from the configuration.
#
# Imports
from typing import Any, Dict, Optional
#
# Third-party Imports
from loguru import logger
#
# Local Imports
from .Chat.chat_session import ChatSessionService
from .Chat.generation_controller import GenerationController
from .config import get_data_dir, get_database_path, get_section, load_cli_config_and_ensure_existence
from .DB.chat_store import PersistenceGateway, SQLiteChatStore
from .Local_Inference.backend import BackendHandle, InferenceBackend
from .Local_Inference.llama_server_backend import LlamaServerBackend
from .Local_Inference.model_lifecycle import ModelLifecycleManager
from .logging_config import configure_logging
from .RAG_Search.dense_retrieval import DenseRetrievalService
from .RAG_Search.prompt_builder import RetrievalPromptBuilder
from .RAG_Search.retrieval_service import RetrievalAssets, RetrievalService, RetrievalServiceHandle
from .state.session_state import SessionState
#
########################################################################################################################
#
# Functions:

def create_backend(config: Dict[str, Any]) -> InferenceBackend:
    server = get_section("llama_server", config)
    return LlamaServerBackend(
        binary=str(server.get("binary", "llama-server")),
        host=str(server.get("host", "127.0.0.1")),
        port=int(server.get("port", 8089)),
        startup_timeout=float(server.get("startup_timeout", 120.0)),
        request_timeout=float(server.get("request_timeout", 600.0)),
        additional_args=list(server.get("additional_args", [])) or None,
        server_log_path=get_data_dir() / "llama_server.log",
    )


async def create_session_service(
    config: Optional[Dict[str, Any]] = None,
    backend: Optional[InferenceBackend] = None,
    retrieval_service: Optional[RetrievalService] = None,
    store: Optional[PersistenceGateway] = None,
    setup_logging: bool = True,
) -> ChatSessionService:
    """
    Wire a ChatSessionService from config, starting retrieval loading in the background.

    Must be awaited on the loop the session will run on. Any collaborator can
    be passed in to replace the reference implementation.
    """
    if config is None:
        config = load_cli_config_and_ensure_existence()
    if setup_logging:
        configure_logging(config)

    if store is None:
        store = SQLiteChatStore(get_database_path(config), chat_defaults=get_section("chat_defaults", config))
    if backend is None:
        backend = create_backend(config)
    if retrieval_service is None:
        retrieval_service = DenseRetrievalService()

    retrieval = RetrievalServiceHandle(retrieval_service)
    assets = RetrievalAssets.from_config(config)
    if get_section("rag", config).get("load_on_startup", True):
        retrieval.start_loading(assets)
    else:
        logger.info("Retrieval loading on startup is disabled")

    state = SessionState()
    lifecycle = ModelLifecycleManager(state, BackendHandle(backend), store)
    controller = GenerationController(state, lifecycle, RetrievalPromptBuilder(retrieval), store)
    service = ChatSessionService(state, store, lifecycle, controller, retrieval_assets=assets)

    state.set_current_chat(store.load_default_chat())
    logger.info(f"Chat session ready with chat {state.current_chat.id}")
    return service

#
# End of bootstrap.py
########################################################################################################################
