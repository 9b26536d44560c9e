"""
命令行接口
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .config import AppConfig, ConfigManager
from .dalle_client import DalleClient
from .dispatcher import GenerationDispatcher
from .exceptions import APIError, ConfigurationError, DrawingError
from .history import HistoryLog
from .image_utils import is_inline_image, load_image_file
from .models import (
    ALL_QUALITIES,
    BATCH_MODELS,
    ApiConfig,
    AspectRatio,
    CustomModel,
    GenerationMode,
    GenerationRequest,
    ImageSize,
    ModelType,
)
from .output_manager import OutputManager
from .prompt_builder import PromptBuilder
from .registry import CredentialStore, CustomModelRegistry
from .storage import FileStorageMedium, Store, open_record_store
from .stream_client import ChatImageStreamClient

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None):
    """配置日志"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    # 日志输出到 stderr，stdout 留给流式文本和 JSON 结果
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )

    # 降低第三方库的日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def create_store(config: AppConfig) -> Store:
    """根据配置打开本地存储"""
    if config.no_storage:
        return open_record_store(None)
    medium = FileStorageMedium(config.storage_dir, quota_bytes=config.storage_quota_bytes)
    return open_record_store(medium)


def resolve_connection(config: AppConfig, credentials: CredentialStore) -> ApiConfig:
    """环境变量/配置文件优先，其次使用已保存的 API 配置"""
    saved = credentials.get()
    key = config.api_key or (saved.key if saved else "")
    base_url = config.base_url or (saved.base_url if saved else "")
    if not key or not base_url:
        raise ConfigurationError("请先设置 API 密钥和地址: ai-drawing config set --key ... --base-url ...", field="api")
    return ApiConfig(key=key, base_url=base_url).upgraded()


def create_dispatcher(config: AppConfig, store: Store) -> GenerationDispatcher:
    """创建生成调度器"""
    connection = resolve_connection(config, CredentialStore(store))
    proxy = config.proxy or None
    return GenerationDispatcher(
        history=HistoryLog(store),
        batch_client=DalleClient(
            api_key=connection.key,
            base_url=connection.base_url,
            timeout=config.timeout,
            proxy=proxy,
        ),
        stream_client=ChatImageStreamClient(
            api_key=connection.key,
            base_url=connection.base_url,
            timeout=config.timeout,
            proxy=proxy,
        ),
        prompt_builder=PromptBuilder(
            reference_template=config.reference_template,
            aspect_ratio_template=config.aspect_ratio_template,
        ),
    )


def _summarize_image(url: str) -> str:
    """内联图片只显示长度，避免刷屏"""
    if is_inline_image(url):
        return f"{url[:30]}...({len(url)} chars)"
    return url


def _print_json(data: Any):
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _resolve_model_type(model: str, requested: Optional[str], registry: CustomModelRegistry) -> ModelType:
    if requested:
        return ModelType(requested)
    custom = registry.find_by_value(model)
    if custom:
        return custom.type
    return ModelType.DALLE if model in BATCH_MODELS else ModelType.OPENAI


def cmd_generate(args: argparse.Namespace, config: AppConfig, store: Store) -> int:
    registry = CustomModelRegistry(store)
    model = args.model or config.default_model
    source_images = tuple(load_image_file(path) for path in args.image or [])
    mask = load_image_file(args.mask) if args.mask else None
    is_image_to_image = args.img2img or bool(source_images)

    request = GenerationRequest(
        prompt=args.prompt,
        model=model,
        model_type=_resolve_model_type(model, args.model_type, registry),
        mode=GenerationMode.IMAGE_TO_IMAGE if is_image_to_image else GenerationMode.TEXT_TO_IMAGE,
        source_images=source_images,
        mask=mask,
        size=args.size,
        n=args.n,
        quality=args.quality,
        aspect_ratio=args.aspect_ratio,
    )
    dispatcher = create_dispatcher(config, store)

    def on_message(content: str):
        sys.stdout.write(content)
        sys.stdout.flush()

    result = dispatcher.dispatch_sync(request, on_message=on_message)
    if result.text:
        sys.stdout.write("\n")

    output: Dict[str, Any] = {
        "status": result.status.value,
        "model_type": result.model_type.value,
        "images": [_summarize_image(url) for url in result.images],
        "record_id": result.record.id if result.record else None,
    }
    if args.output and result.images:
        paths = OutputManager(Path(args.output)).save_result(result, request.prompt)
        output["files"] = [str(p) for p in paths]
    _print_json(output)
    return 0 if result.success else 2


def cmd_history(args: argparse.Namespace, config: AppConfig, store: Store) -> int:
    history = HistoryLog(store)

    if args.action == "list":
        items = history.list()[:args.limit] if args.limit else history.list()
        _print_json([
            dict(image.to_dict(), url=_summarize_image(image.url))
            for image in items
        ])
    elif args.action == "remove":
        history.remove_by_id(args.id)
        logger.info(f"已删除历史记录: {args.id}")
    elif args.action == "clear":
        history.clear()
        logger.info("已清空历史记录")
    elif args.action == "export":
        image = history.get(args.id)
        if image is None:
            raise DrawingError(f"历史记录不存在: {args.id}")
        output_dir = Path(args.output or config.output_dir)
        path = OutputManager(output_dir).export_image(image)
        _print_json({"id": image.id, "file": str(path)})
    return 0


def cmd_config(args: argparse.Namespace, config: AppConfig, store: Store) -> int:
    credentials = CredentialStore(store)

    if args.action == "show":
        saved = credentials.get()
        if saved is None:
            _print_json(None)
        else:
            masked = saved.key[:4] + "****" if saved.key else ""
            _print_json(dict(saved.to_dict(), key=masked))
    elif args.action == "set":
        saved = credentials.set(args.key, args.base_url)
        logger.info(f"已保存 API 配置: {saved.base_url}")
    elif args.action == "import-link":
        params = parse_qs(urlparse(args.link).query)
        base_url = params.get("url", [""])[0]
        api_key = params.get("apikey", [""])[0]
        if not base_url or not api_key:
            raise ConfigurationError("链接中缺少 url 或 apikey 参数", field="link")
        saved = credentials.set(api_key, base_url)
        logger.info(f"已从链接导入 API 配置: {saved.base_url}")
    elif args.action == "remove":
        credentials.remove()
        logger.info("已删除 API 配置")
    return 0


def cmd_models(args: argparse.Namespace, config: AppConfig, store: Store) -> int:
    registry = CustomModelRegistry(store)

    if args.action == "list":
        _print_json([model.to_dict() for model in registry.list()])
        return 0
    if args.action == "add":
        model = CustomModel(
            id=str(uuid.uuid4()),
            name=args.name,
            value=args.value,
            type=ModelType(args.type),
        )
        ok = registry.add(model)
        if ok:
            _print_json(model.to_dict())
    elif args.action == "remove":
        ok = registry.remove(args.id)
    else:
        changes = {
            key: value
            for key, value in (("name", args.name), ("value", args.value), ("type", args.type))
            if value is not None
        }
        ok = registry.update(args.id, **changes)
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-drawing",
        description="AI绘图 - 调用 DALL-E 风格接口或流式对话接口生成图片",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 保存 API 配置
  python -m ai_drawing config set --key sk-xxx --base-url https://api.example.com

  # 文生图
  python -m ai_drawing generate "a cat" -m gpt-image-1

  # 图生图（多张参考图）
  python -m ai_drawing generate "换成水彩风格" -m sora_image -i a.png -i b.png --aspect-ratio 16:9

  # 查看历史记录
  python -m ai_drawing history list
        """,
    )
    parser.add_argument("-c", "--config", help="配置文件路径 (默认: 当前目录下的 config.json)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="日志级别 (默认: INFO)",
    )
    parser.add_argument("--log-file", help="日志文件路径")

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen = subparsers.add_parser("generate", help="生成图片")
    gen.add_argument("prompt", help="提示词")
    gen.add_argument("-m", "--model", help="模型名称 (默认: gpt-image-1)")
    gen.add_argument("--model-type", choices=[t.value for t in ModelType], help="模型协议类型，默认按模型推断")
    gen.add_argument("-i", "--image", action="append", help="源图片路径，可多次指定（最多4张）")
    gen.add_argument("--img2img", action="store_true", help="图生图模式")
    gen.add_argument("--mask", help="蒙版图片路径")
    gen.add_argument("--size", default=ImageSize.SQUARE.value, choices=[s.value for s in ImageSize])
    gen.add_argument("-n", type=int, default=1, choices=[1, 2, 3, 4], help="生成数量")
    gen.add_argument("--quality", default="auto", choices=ALL_QUALITIES)
    gen.add_argument("--aspect-ratio", default=AspectRatio.SQUARE.value, choices=[r.value for r in AspectRatio])
    gen.add_argument("-o", "--output", help="保存图片的目录")
    gen.set_defaults(handler=cmd_generate)

    hist = subparsers.add_parser("history", help="历史记录")
    hist_sub = hist.add_subparsers(dest="action", required=True)
    hist_list = hist_sub.add_parser("list", help="列出历史记录")
    hist_list.add_argument("--limit", type=int, default=0)
    hist_remove = hist_sub.add_parser("remove", help="删除一条记录")
    hist_remove.add_argument("id")
    hist_sub.add_parser("clear", help="清空历史记录")
    hist_export = hist_sub.add_parser("export", help="导出图片")
    hist_export.add_argument("id")
    hist_export.add_argument("-o", "--output", help="输出目录")
    hist.set_defaults(handler=cmd_history)

    conf = subparsers.add_parser("config", help="API 配置")
    conf_sub = conf.add_subparsers(dest="action", required=True)
    conf_sub.add_parser("show", help="查看 API 配置")
    conf_set = conf_sub.add_parser("set", help="保存 API 配置")
    conf_set.add_argument("--key", required=True)
    conf_set.add_argument("--base-url", required=True)
    conf_link = conf_sub.add_parser("import-link", help="从分享链接导入 (?url=...&apikey=...)")
    conf_link.add_argument("link")
    conf_sub.add_parser("remove", help="删除 API 配置")
    conf.set_defaults(handler=cmd_config)

    models = subparsers.add_parser("models", help="自定义模型")
    models_sub = models.add_subparsers(dest="action", required=True)
    models_sub.add_parser("list", help="列出自定义模型")
    models_add = models_sub.add_parser("add", help="添加自定义模型")
    models_add.add_argument("--name", required=True)
    models_add.add_argument("--value", required=True)
    models_add.add_argument("--type", default=ModelType.OPENAI.value, choices=[t.value for t in ModelType])
    models_remove = models_sub.add_parser("remove", help="删除自定义模型")
    models_remove.add_argument("id")
    models_update = models_sub.add_parser("update", help="更新自定义模型")
    models_update.add_argument("id")
    models_update.add_argument("--name")
    models_update.add_argument("--value")
    models_update.add_argument("--type", choices=[t.value for t in ModelType])
    models.set_defaults(handler=cmd_models)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_file=Path(args.log_file) if args.log_file else None)

    try:
        config = ConfigManager(config_path=Path(args.config) if args.config else None).load()
        store = create_store(config)
        return args.handler(args, config, store)

    except APIError as e:
        logger.error(f"生成错误: {e}")
        error = e.to_dict()
        if e.partial_text:
            error["partial_text"] = e.partial_text
        print(json.dumps({"error": error}, ensure_ascii=False))
        return 1

    except DrawingError as e:
        logger.error(f"生成错误: {e}")
        print(json.dumps({"error": str(e)}, ensure_ascii=False))
        return 1

    except Exception as e:
        logger.exception(f"未知错误: {e}")
        print(json.dumps({"error": str(e)}, ensure_ascii=False))
        return 1


if __name__ == "__main__":
    sys.exit(main())
