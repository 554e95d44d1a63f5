"""repl-host 命令行入口包。"""
