"""流水线层：会话编排、SQL 执行与取消协调。

子模块按需导入（orchestrator / query_engine 依赖 providers 与 drivers，
而 providers 又依赖 cancellation），这里不做聚合导出。
"""
