"""SQL Chat Core 顶层包。

该包提供自然语言生成 SQL 与执行 SQL 的流式编排核心，
包括配置加载、领域模型、Provider 适配、数据库驱动适配、
语句分类、取消协调、会话编排、查询执行与持久化存储等能力。
"""

__version__ = "0.1.0"
